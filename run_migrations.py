"""
Run Alembic migrations against DATABASE_URL.
"""
from alembic.config import Config
from alembic import command

from evidence_ledger.api.core.config import settings

alembic_cfg = Config("alembic.ini")
alembic_cfg.set_main_option("sqlalchemy.url", settings.DATABASE_URL)

print(f"Running migrations with URL: {settings.DATABASE_URL.split('@')[-1]}")
command.upgrade(alembic_cfg, "head")
print("Migrations completed successfully")
