"""
fringestage_vote/test_coprocessor.py - FHE Coprocessor Tests

Tests:
- Input proofs bind handle, contract and user
- Homomorphic add produces ungranted handles
- Decryption needs grants for both user and contract
- Key persistence
"""
import os
import stat

import pytest

from .conftest import ALICE, BOB
from .coprocessor import KeyMaterial, load_or_generate_keys, handle_for
from .errors import EngineRevert, RevertCode
from .models import ExternalInput


@pytest.fixture
def coprocessor(engine):
    return engine.coprocessor


@pytest.fixture
def contract(engine):
    return engine.address


class TestInputProofs:

    def test_register_returns_handle_and_proof(self, coprocessor, contract):
        """Registered inputs get a 0x handle and a proof for (contract, user)."""
        external = coprocessor.register_input(coprocessor.public_key.encrypt(42), contract, ALICE)
        assert external.handle.startswith("0x")
        assert len(external.handle) == 66
        assert external.proof == coprocessor.input_proof(external.handle, contract, ALICE)

    def test_proof_differs_per_user(self, coprocessor, contract):
        """The same handle proves differently for a different user."""
        external = coprocessor.register_input(coprocessor.public_key.encrypt(1), contract, ALICE)
        assert coprocessor.input_proof(external.handle, contract, BOB) != external.proof

    def test_foreign_key_rejected(self, coprocessor, contract):
        """Ciphertexts under another public key are refused."""
        other = KeyMaterial.generate(n_length=256)
        with pytest.raises(ValueError):
            coprocessor.register_input(other.public_key.encrypt(1), contract, ALICE)

    def test_fractional_encoding_rejected(self, coprocessor, contract):
        """Only exponent-0 (integer) ciphertexts are registered."""
        fractional = coprocessor.public_key.encrypt(2.5)
        assert fractional.exponent != 0
        with pytest.raises(EngineRevert) as exc_info:
            coprocessor.register_input(fractional, contract, ALICE)
        assert exc_info.value.code == RevertCode.MALFORMED_ARGUMENT
        assert exc_info.value.revert.details == {"argument": "exponent"}

    def test_from_external_checks_user(self, engine, coprocessor, contract):
        """Presenting Alice's input as Bob fails."""
        external = coprocessor.register_input(coprocessor.public_key.encrypt(5), contract, ALICE)
        with engine.ledger.store.transaction() as db:
            fhe = coprocessor.executor(db, contract)
            with pytest.raises(EngineRevert) as exc_info:
                fhe.from_external(external, BOB)
            assert exc_info.value.code == RevertCode.INVALID_INPUT_PROOF
            assert fhe.from_external(external, ALICE) == external.handle
            assert fhe.is_allowed(external.handle, contract)

    def test_unknown_handle_with_valid_proof(self, engine, coprocessor, contract):
        """A correctly signed proof for a handle nobody registered still fails."""
        handle = "0x" + "ab" * 32
        external = ExternalInput(handle=handle, proof=coprocessor.input_proof(handle, contract, ALICE))
        with engine.ledger.store.transaction() as db:
            with pytest.raises(EngineRevert) as exc_info:
                coprocessor.executor(db, contract).from_external(external, ALICE)
        assert exc_info.value.code == RevertCode.UNKNOWN_HANDLE


class TestHomomorphicOps:

    def test_add_yields_new_ungranted_handle(self, engine, coprocessor, contract):
        """Sum handles carry no grants until someone grants them."""
        a = coprocessor.register_input(coprocessor.public_key.encrypt(30), contract, ALICE)
        b = coprocessor.register_input(coprocessor.public_key.encrypt(12), contract, ALICE)
        with engine.ledger.store.transaction() as db:
            fhe = coprocessor.executor(db, contract)
            lhs = fhe.from_external(a, ALICE)
            rhs = fhe.from_external(b, ALICE)
            total = fhe.add(lhs, rhs)
            assert total not in (lhs, rhs)
            assert not fhe.is_allowed(total, contract)
            fhe.allow_this(total)
            fhe.allow(total, BOB)

        assert coprocessor.user_decrypt(total, contract, BOB) == 42

    def test_add_requires_contract_grant(self, engine, coprocessor, contract):
        """The contract may only compute on handles it was granted."""
        a = coprocessor.register_input(coprocessor.public_key.encrypt(1), contract, ALICE)
        with engine.ledger.store.transaction() as db:
            fhe = coprocessor.executor(db, contract)
            zero = fhe.trivial_encrypt(0)
            fhe.allow_this(zero)
            with pytest.raises(EngineRevert) as exc_info:
                fhe.add(zero, a.handle)
        assert exc_info.value.code == RevertCode.ACL_DENIED

    def test_rolled_back_grants_disappear(self, engine, coprocessor, contract):
        """Grants written inside a failed transaction do not survive."""
        with pytest.raises(RuntimeError):
            with engine.ledger.store.transaction() as db:
                fhe = coprocessor.executor(db, contract)
                handle = fhe.trivial_encrypt(9)
                fhe.allow_this(handle)
                fhe.allow(handle, ALICE)
                raise RuntimeError("abort")
        with pytest.raises(EngineRevert) as exc_info:
            coprocessor.user_decrypt(handle, contract, ALICE)
        assert exc_info.value.code == RevertCode.ACL_DENIED

    def test_decrypt_needs_contract_grant(self, engine, coprocessor, contract):
        """A user grant alone is not enough."""
        with engine.ledger.store.transaction() as db:
            fhe = coprocessor.executor(db, contract)
            handle = fhe.trivial_encrypt(3)
            fhe.allow(handle, ALICE)
        with pytest.raises(EngineRevert) as exc_info:
            coprocessor.user_decrypt(handle, contract, ALICE)
        assert exc_info.value.code == RevertCode.ACL_DENIED
        assert exc_info.value.revert.details["address"] == contract

    def test_handle_is_content_derived(self):
        """Handles are a digest of the ciphertext value."""
        assert handle_for(12345) == handle_for(12345)
        assert handle_for(12345) != handle_for(12346)


class TestKeyFile:

    def test_generate_then_reload(self, tmp_path):
        """Keys written on first use are read back unchanged."""
        path = tmp_path / "keys" / "fhe.json"
        first = load_or_generate_keys(str(path), n_length=256)
        assert path.exists()
        assert stat.S_IMODE(os.stat(path).st_mode) == 0o600

        second = load_or_generate_keys(str(path), n_length=256)
        assert second.public_key == first.public_key
        assert second.signing_key == first.signing_key
        assert second.private_key.decrypt(first.public_key.encrypt(77)) == 77

    def test_round_trip_dict(self, keys):
        """to_dict/from_dict preserve the keypair."""
        restored = KeyMaterial.from_dict(keys.to_dict())
        assert restored.public_key == keys.public_key
        assert restored.private_key.decrypt(keys.public_key.encrypt(5)) == 5
