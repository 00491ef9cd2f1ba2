"""
fringestage_vote/coprocessor.py - FHE Coprocessor Adapter

Wraps additively homomorphic Paillier encryption (`phe`) in the handle and
permission model the engine is written against.

Responsibilities:
- Hold the key material (Paillier keypair + input-proof signing key)
- Map opaque handles to stored ciphertexts
- Issue and verify input proofs binding a ciphertext to (contract, user)
- Homomorphic add, producing a NEW handle every time
- Per-handle permission list (ACL); decryption requires a grant

Every write goes through the database session of the calling transaction,
so a rejected transaction leaves no ciphertexts or grants behind.
"""
import hashlib
import hmac
import json
import logging
import secrets
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Any

from phe import paillier
from sqlalchemy.orm import Session as DBSession

from .errors import EngineRevert, invalid_input_proof, unknown_handle, acl_denied, malformed_argument
from .models import ExternalInput, normalize_address
from .store import LedgerStore, CiphertextRow, AclRow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class KeyMaterial:
    """Coprocessor secrets. Only the public key ever leaves this process."""
    public_key: paillier.PaillierPublicKey
    private_key: paillier.PaillierPrivateKey
    signing_key: bytes

    @classmethod
    def generate(cls, n_length: int = 2048) -> "KeyMaterial":
        public_key, private_key = paillier.generate_paillier_keypair(n_length=n_length)
        return cls(public_key=public_key, private_key=private_key, signing_key=secrets.token_bytes(32))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "n": str(self.public_key.n),
            "p": str(self.private_key.p),
            "q": str(self.private_key.q),
            "signing_key": self.signing_key.hex(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "KeyMaterial":
        public_key = paillier.PaillierPublicKey(int(data["n"]))
        private_key = paillier.PaillierPrivateKey(public_key, int(data["p"]), int(data["q"]))
        return cls(public_key=public_key, private_key=private_key,
                   signing_key=bytes.fromhex(data["signing_key"]))


def load_or_generate_keys(path: str, n_length: int = 2048) -> KeyMaterial:
    """
    Load key material from `path`, generating and writing it on first use.

    Parameters:
        path (str): JSON key file location.
        n_length (int): Paillier modulus size in bits for newly generated keys.

    Returns:
        KeyMaterial: the loaded or freshly generated keys.
    """
    key_path = Path(path)
    if key_path.exists():
        with key_path.open("r", encoding="utf-8") as f:
            return KeyMaterial.from_dict(json.load(f))

    logger.info("Generating %d-bit coprocessor keys at %s", n_length, key_path)
    keys = KeyMaterial.generate(n_length)
    key_path.parent.mkdir(parents=True, exist_ok=True)
    with key_path.open("w", encoding="utf-8") as f:
        json.dump(keys.to_dict(), f)
    key_path.chmod(0o600)
    return keys


def handle_for(ciphertext: int) -> str:
    return "0x" + hashlib.sha256(str(ciphertext).encode("ascii")).hexdigest()


class Coprocessor:
    """
    Ciphertext registry and key holder shared by every engine transaction.
    """

    def __init__(self, keys: KeyMaterial, store: LedgerStore):
        self.keys = keys
        self.store = store

    @property
    def public_key(self) -> paillier.PaillierPublicKey:
        return self.keys.public_key

    def executor(self, db: DBSession, contract: str) -> "FheExecutor":
        """Bind homomorphic operations to one transaction on behalf of `contract`."""
        return FheExecutor(self, db, contract)

    def input_proof(self, handle: str, contract: str, user: str) -> str:
        message = f"{handle}|{contract.lower()}|{user.lower()}".encode("ascii")
        return hmac.new(self.keys.signing_key, message, hashlib.sha256).hexdigest()

    def register_input(self, ciphertext: paillier.EncryptedNumber, contract: str, user: str) -> ExternalInput:
        """
        Accept a client-encrypted value and return its handle and input proof.

        The proof binds the handle to `contract` and `user`; the engine
        rejects it if presented by anyone else or to any other contract.

        Only integer encodings (exponent 0) are accepted. A fractional input
        would turn every sum it joins into a non-integer.

        Raises:
            EngineRevert: MALFORMED_ARGUMENT for a non-zero exponent.
            ValueError: if `ciphertext` is under a different public key.
        """
        user = normalize_address(user, "user")
        contract = normalize_address(contract, "contract")
        if ciphertext.public_key != self.public_key:
            raise ValueError("Ciphertext was not encrypted under the coprocessor public key")
        if ciphertext.exponent != 0:
            raise EngineRevert(malformed_argument("exponent", "expected integer encoding (exponent 0)"))
        with self.store.transaction() as db:
            handle = _put_ciphertext(db, ciphertext)
        return ExternalInput(handle=handle, proof=self.input_proof(handle, contract, user))

    def user_decrypt(self, handle: str, contract: str, user: str) -> int:
        """
        Decrypt `handle` for `user`.

        Both the user and the contract that owns the value must hold a grant
        on this exact handle.

        Raises:
            EngineRevert: UNKNOWN_HANDLE or ACL_DENIED.
        """
        user = normalize_address(user, "user")
        contract = normalize_address(contract, "contract")
        with self.store.snapshot() as db:
            for address in (user, contract):
                if db.get(AclRow, (handle, address)) is None:
                    raise EngineRevert(acl_denied(handle, address))
            encrypted = _get_ciphertext(db, self.public_key, handle)
        return self.keys.private_key.decrypt(encrypted)


class FheExecutor:
    """Homomorphic operations inside one ledger transaction."""

    def __init__(self, coprocessor: Coprocessor, db: DBSession, contract: str):
        self.coprocessor = coprocessor
        self.db = db
        self.contract = contract.lower()

    def from_external(self, external: ExternalInput, user: str) -> str:
        """
        Verify an input proof and take the value into the contract's hands.

        Returns:
            str: the internal handle, on which the contract now holds a grant.

        Raises:
            EngineRevert: INVALID_INPUT_PROOF or UNKNOWN_HANDLE.
        """
        expected = self.coprocessor.input_proof(external.handle, self.contract, user)
        if not isinstance(external.proof, str) or not hmac.compare_digest(expected, external.proof):
            raise EngineRevert(invalid_input_proof(external.handle, user))
        if self.db.get(CiphertextRow, external.handle) is None:
            raise EngineRevert(unknown_handle(external.handle))
        self.allow_this(external.handle)
        return external.handle

    def trivial_encrypt(self, value: int) -> str:
        return _put_ciphertext(self.db, self.coprocessor.public_key.encrypt(value))

    def add(self, lhs: str, rhs: str) -> str:
        """
        Homomorphically add two handles. The result lives under a new handle
        that carries NO grants; the caller must re-grant what it needs.
        """
        for handle in (lhs, rhs):
            if not self.is_allowed(handle, self.contract):
                raise EngineRevert(acl_denied(handle, self.contract))
        public_key = self.coprocessor.public_key
        total = _get_ciphertext(self.db, public_key, lhs) + _get_ciphertext(self.db, public_key, rhs)
        return _put_ciphertext(self.db, total)

    def allow(self, handle: str, address: str) -> None:
        address = address.lower()
        if self.db.get(CiphertextRow, handle) is None:
            raise EngineRevert(unknown_handle(handle))
        if self.db.get(AclRow, (handle, address)) is None:
            self.db.add(AclRow(handle=handle, address=address))
            self.db.flush()

    def allow_this(self, handle: str) -> None:
        self.allow(handle, self.contract)

    def is_allowed(self, handle: str, address: str) -> bool:
        return self.db.get(AclRow, (handle, address.lower())) is not None


def _put_ciphertext(db: DBSession, encrypted: paillier.EncryptedNumber) -> str:
    ciphertext = encrypted.ciphertext()
    handle = handle_for(ciphertext)
    if db.get(CiphertextRow, handle) is None:
        db.add(CiphertextRow(handle=handle, ciphertext=str(ciphertext), exponent=encrypted.exponent))
        db.flush()
    return handle


def _get_ciphertext(db: DBSession, public_key: paillier.PaillierPublicKey, handle: str) -> paillier.EncryptedNumber:
    row = db.get(CiphertextRow, handle)
    if row is None:
        raise EngineRevert(unknown_handle(handle))
    return paillier.EncryptedNumber(public_key, int(row.ciphertext), row.exponent)
