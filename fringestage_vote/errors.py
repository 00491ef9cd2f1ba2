"""
fringestage_vote/errors.py - Rejection Taxonomy

Every failed operation is a named rejection. A rejection rolls back the
whole transaction that raised it; nothing is partially applied.
"""
from enum import Enum
from dataclasses import dataclass
from typing import Optional, Dict, Any


class RevertKind(str, Enum):
    CUSTOM_ERROR = "CUSTOM_ERROR"  # Typed rejection
    REQUIRE = "REQUIRE"  # Generic message-only rejection
    ABI = "ABI"  # Malformed argument, rejected before execution


class RevertCode(str, Enum):
    # Session lifecycle
    SESSION_NOT_FOUND = "SessionNotFound"
    SESSION_NOT_ACTIVE = "SessionNotActive"
    SESSION_STILL_ACTIVE = "SessionStillActive"
    ALREADY_VOTED = "AlreadyVoted"

    # Authorization
    ONLY_THEATER_COMPANY = "OnlyTheaterCompany"
    UNAUTHORIZED_THEATER = "UnauthorizedTheater"

    # Decryption handshake
    INSUFFICIENT_VOTES = "InsufficientVotes"
    DECRYPTION_ALREADY_REQUESTED = "DecryptionAlreadyRequested"
    DECRYPTION_NOT_REQUESTED = "DecryptionNotRequested"
    RESULTS_ALREADY_STORED = "ResultsAlreadyStored"
    RESULTS_NOT_AVAILABLE = "ResultsNotAvailable"

    # FHE coprocessor
    INVALID_INPUT_PROOF = "InvalidInputProof"
    UNKNOWN_HANDLE = "UnknownHandle"
    ACL_DENIED = "ACLNotAllowed"

    # Argument decoding
    MALFORMED_ARGUMENT = "MalformedArgument"


@dataclass(frozen=True)
class Revert:
    """Immutable rejection payload."""
    code: RevertCode
    kind: RevertKind
    message: str
    details: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        """
        Serialize the Revert into a plain dictionary for API responses and logs.

        Returns:
            dict: Dictionary with keys `error_code`, `kind`, `message` and
            `details` (empty dict if no details were set).
        """
        return {
            "error_code": self.code.value,
            "kind": self.kind.value,
            "message": self.message,
            "details": self.details or {},
        }


class EngineRevert(Exception):
    """Raised for any rejected operation."""
    def __init__(self, revert: Revert):
        self.revert = revert
        super().__init__(revert.message)

    @property
    def code(self) -> RevertCode:
        return self.revert.code


def _custom(code: RevertCode, message: str, **details: Any) -> Revert:
    return Revert(code=code, kind=RevertKind.CUSTOM_ERROR, message=message, details=details)


# Pre-defined factories for consistency
def session_not_found(session_id: int) -> Revert:
    return _custom(RevertCode.SESSION_NOT_FOUND, "Session does not exist", session_id=session_id)


def session_not_active(session_id: int) -> Revert:
    """
    Rejection for votes against a closed session or outside its time window.
    """
    return _custom(RevertCode.SESSION_NOT_ACTIVE, "Session is not accepting votes", session_id=session_id)


def session_still_active(session_id: int) -> Revert:
    return _custom(RevertCode.SESSION_STILL_ACTIVE, "Session has not ended", session_id=session_id)


def already_voted(session_id: int, voter: str) -> Revert:
    return _custom(RevertCode.ALREADY_VOTED, "Address has already voted in this session",
                   session_id=session_id, voter=voter)


def only_theater_company(session_id: int, caller: str) -> Revert:
    """
    Rejection for creator-only operations (end, authorize) called by anyone else.
    """
    return _custom(RevertCode.ONLY_THEATER_COMPANY, "Caller is not the session's theater company",
                   session_id=session_id, caller=caller)


def unauthorized_theater(session_id: int, caller: str) -> Revert:
    """
    Rejection for callers missing from the session's authorization set.
    """
    return _custom(RevertCode.UNAUTHORIZED_THEATER, "Caller is not authorized for this session",
                   session_id=session_id, caller=caller)


def insufficient_votes(session_id: int, vote_count: int, required: int) -> Revert:
    return _custom(RevertCode.INSUFFICIENT_VOTES, "Not enough votes to request decryption",
                   session_id=session_id, vote_count=vote_count, required=required)


def decryption_already_requested(session_id: int) -> Revert:
    return _custom(RevertCode.DECRYPTION_ALREADY_REQUESTED, "Decryption already requested",
                   session_id=session_id)


def decryption_not_requested(session_id: int) -> Revert:
    return Revert(code=RevertCode.DECRYPTION_NOT_REQUESTED, kind=RevertKind.REQUIRE,
                  message="Decryption not requested", details={"session_id": session_id})


def results_already_stored(session_id: int) -> Revert:
    return Revert(code=RevertCode.RESULTS_ALREADY_STORED, kind=RevertKind.REQUIRE,
                  message="Results already stored", details={"session_id": session_id})


def results_not_available(session_id: int) -> Revert:
    return Revert(code=RevertCode.RESULTS_NOT_AVAILABLE, kind=RevertKind.REQUIRE,
                  message="Results not available", details={"session_id": session_id})


def invalid_input_proof(handle: str, user: str) -> Revert:
    """
    Rejection for an encrypted input whose proof does not bind it to this
    engine and this caller.
    """
    return _custom(RevertCode.INVALID_INPUT_PROOF, "Input proof does not match handle, contract and user",
                   handle=handle, user=user)


def unknown_handle(handle: str) -> Revert:
    return _custom(RevertCode.UNKNOWN_HANDLE, "No ciphertext registered under handle", handle=handle)


def acl_denied(handle: str, address: str) -> Revert:
    return _custom(RevertCode.ACL_DENIED, "Address holds no permission on handle",
                   handle=handle, address=address)


def malformed_argument(name: str, reason: str) -> Revert:
    return Revert(code=RevertCode.MALFORMED_ARGUMENT, kind=RevertKind.ABI,
                  message=f"Malformed argument '{name}': {reason}", details={"argument": name})
