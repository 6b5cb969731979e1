"""Tests for canonical hashing and idempotency key derivation."""

from decimal import Decimal
from uuid import UUID

import pytest

from payroll_engines.idempotency import derive_idempotency_key
from payroll_kernel.utils.hashing import (
    canonicalize_json,
    hash_bytes,
    hash_payload,
    hash_payout_rows,
)

RUN_ID = UUID("12345678-1234-5678-1234-567812345678")


class TestCanonicalHashing:

    def test_key_order_and_whitespace_do_not_matter(self):
        assert canonicalize_json({"b": 1, "a": [1, 2]}) == '{"a":[1,2],"b":1}'
        assert hash_payload({"b": 1, "a": 2}) == hash_payload({"a": 2, "b": 1})

    def test_decimals_are_normalized(self):
        assert hash_payload({"x": Decimal("250.00")}) == hash_payload({"x": Decimal("250")})

    def test_sets_are_sorted(self):
        assert canonicalize_json({"s": frozenset({"b", "a"})}) == '{"s":["a","b"]}'

    def test_unsupported_type(self):
        with pytest.raises(TypeError):
            canonicalize_json({"x": object()})

    def test_payout_rows_independent_of_order(self):
        rows = [{"idempotency_key": "k2", "usd_amount": Decimal("1")}, {"idempotency_key": "k1"}]
        assert hash_payout_rows(rows) == hash_payout_rows(list(reversed(rows)))

    def test_hash_bytes(self):
        assert hash_bytes(b"") == "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"


class TestIdempotencyKey:

    def test_deterministic(self):
        assert derive_idempotency_key(RUN_ID, "user-1") == derive_idempotency_key(str(RUN_ID), "user-1")

    def test_format(self):
        key = derive_idempotency_key(RUN_ID, "user-1")
        prefix, run_part, digest = key.split("_")
        assert prefix == "payout"
        assert run_part == "12345678"
        assert len(digest) == 32

    def test_distinct_per_contributor_and_run(self):
        other_run = UUID("87654321-1234-5678-1234-567812345678")
        keys = {
            derive_idempotency_key(RUN_ID, "user-1"),
            derive_idempotency_key(RUN_ID, "user-2"),
            derive_idempotency_key(other_run, "user-1"),
        }
        assert len(keys) == 3

    def test_contributor_required(self):
        with pytest.raises(ValueError):
            derive_idempotency_key(RUN_ID, "")
