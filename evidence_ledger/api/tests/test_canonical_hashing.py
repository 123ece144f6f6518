import hashlib
import re

import pytest

from evidence_ledger.api.core.errors import ErrorCode, LedgerError
from evidence_ledger.api.utils.hashing import canonicalize, hash_bytes, hash_canonical, unencodable_paths, verify_hash


def test_canonicalize_sorts_keys_at_every_level():
    first = {"b": 1, "a": {"z": [3, {"y": 1, "x": 2}], "c": None}}
    second = {"a": {"c": None, "z": [3, {"x": 2, "y": 1}]}, "b": 1}

    assert canonicalize(first) == canonicalize(second)
    assert canonicalize(first) == b'{"a":{"c":null,"z":[3,{"x":2,"y":1}]},"b":1}'


def test_canonicalize_keeps_unicode_unescaped():
    assert canonicalize({"name": "Björkö Stål"}) == '{"name":"Björkö Stål"}'.encode("utf-8")


def test_hash_is_stable_lowercase_hex64():
    metadata = {"dataset_type": "BOM", "purpose_tags": ["CBAM"], "contains_personal_data": False}

    digests = {hash_canonical(dict(metadata)) for _ in range(5)}

    assert len(digests) == 1
    digest = digests.pop()
    assert re.fullmatch(r"[0-9a-f]{64}", digest)
    assert digest == hashlib.sha256(canonicalize(metadata)).hexdigest()


@pytest.mark.parametrize("payload", ["free text", 42, 4.2, ["a", "b"], None, True])
def test_non_object_payload_is_invalid(payload):
    with pytest.raises(LedgerError) as exc:
        canonicalize(payload)
    assert exc.value.error_code == ErrorCode.INVALID_PAYLOAD


def test_non_json_values_are_invalid():
    with pytest.raises(LedgerError) as exc:
        canonicalize({"ratio": float("nan")})
    assert exc.value.error_code == ErrorCode.INVALID_PAYLOAD

    with pytest.raises(LedgerError) as exc:
        canonicalize({"tags": {"a", "b"}})
    assert exc.value.error_code == ErrorCode.INVALID_PAYLOAD


def test_verify_hash():
    data = b'{"a":1}'
    assert verify_hash(data, hash_bytes(data))
    assert not verify_hash(data + b" ", hash_bytes(data))
    assert not verify_hash(data, None)


def test_unpaired_surrogate_is_invalid_payload():
    with pytest.raises(LedgerError) as exc:
        canonicalize({"name": "\ud800"})
    assert exc.value.error_code == ErrorCode.INVALID_PAYLOAD


def test_unencodable_paths_point_at_the_bad_text():
    body = {"ok": "Björkö", "tags": ["CBAM", "x\udc80"], "site": {"name": "\ud800"}, "\ud83d": 1}

    assert unencodable_paths(body) == ["tags[1]", "site.name", "body"]
    assert unencodable_paths({"name": "Björkö Stål", "n": 1}) == []
