"""
fringestage_vote/models.py - Value Types

Immutable views handed across the engine boundary. Everything here is plain
integers, strings and unix seconds; no floats.
"""
import re
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Dict, Any, List, Union

from .errors import EngineRevert, malformed_argument


class Dimension(str, Enum):
    """The four fixed rating dimensions."""
    PLOT_TENSION = "plot_tension"
    PERFORMANCE = "performance"
    STAGE_DESIGN = "stage_design"
    PACING = "pacing"


DIMENSIONS = tuple(Dimension)

ADDRESS_REGEX = re.compile(r'^0x[0-9a-fA-F]{40}$')
BYTES32_REGEX = re.compile(r'^0x[0-9a-fA-F]{64}$')


def normalize_address(address: str, name: str = "address") -> str:
    """
    Validate a 20-byte hex address and return its lowercase form.

    Raises:
        EngineRevert: MALFORMED_ARGUMENT if `address` is not `0x` + 40 hex digits.
    """
    if not isinstance(address, str) or not ADDRESS_REGEX.match(address):
        raise EngineRevert(malformed_argument(name, "expected 0x-prefixed 20-byte hex address"))
    return address.lower()


def parse_bytes32(value: Union[bytes, str], name: str = "comment_hash") -> bytes:
    """
    Accept a 32-byte digest as raw bytes or a `0x` hex string.
    """
    if isinstance(value, bytes):
        if len(value) != 32:
            raise EngineRevert(malformed_argument(name, "expected 32 bytes"))
        return value
    if isinstance(value, str) and BYTES32_REGEX.match(value):
        return bytes.fromhex(value[2:])
    raise EngineRevert(malformed_argument(name, "expected 32 bytes or 0x-prefixed 64 hex digits"))


def require_uint(value: Any, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise EngineRevert(malformed_argument(name, "expected unsigned integer"))
    return value


@dataclass(frozen=True)
class ExternalInput:
    """A client-encrypted value: ciphertext handle plus its input proof."""
    handle: str
    proof: str


@dataclass(frozen=True)
class RatingInputs:
    """One voter's four encrypted ratings."""
    plot_tension: ExternalInput
    performance: ExternalInput
    stage_design: ExternalInput
    pacing: ExternalInput

    def by_dimension(self) -> Dict[Dimension, ExternalInput]:
        return {dim: getattr(self, dim.value) for dim in DIMENSIONS}


@dataclass(frozen=True)
class SessionInfo:
    session_id: int
    title: str
    venue: str
    start_time: int
    end_time: int
    theater_company: str
    vote_count: int
    is_active: bool
    decryption_requested: bool
    decryption_completed: bool

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class EncryptedAggregates:
    """Current accumulator handles. Useless without a decryption grant."""
    plot_tension: str
    performance: str
    stage_design: str
    pacing: str

    def handles(self) -> List[str]:
        return [getattr(self, dim.value) for dim in DIMENSIONS]

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class DecryptedResults:
    """
    Finalized totals for a session plus averages derived by truncating
    integer division. Averages are zero when no votes were counted.
    """
    session_id: int
    vote_count: int
    total_plot_tension: int
    total_performance: int
    total_stage_design: int
    total_pacing: int
    avg_plot_tension: int
    avg_performance: int
    avg_stage_design: int
    avg_pacing: int

    @classmethod
    def from_totals(cls, session_id: int, vote_count: int, totals: Dict[Dimension, int]) -> "DecryptedResults":
        def avg(total: int) -> int:
            return total // vote_count if vote_count > 0 else 0

        return cls(
            session_id=session_id,
            vote_count=vote_count,
            total_plot_tension=totals[Dimension.PLOT_TENSION],
            total_performance=totals[Dimension.PERFORMANCE],
            total_stage_design=totals[Dimension.STAGE_DESIGN],
            total_pacing=totals[Dimension.PACING],
            avg_plot_tension=avg(totals[Dimension.PLOT_TENSION]),
            avg_performance=avg(totals[Dimension.PERFORMANCE]),
            avg_stage_design=avg(totals[Dimension.STAGE_DESIGN]),
            avg_pacing=avg(totals[Dimension.PACING]),
        )

    def totals(self) -> Dict[Dimension, int]:
        return {dim: getattr(self, f"total_{dim.value}") for dim in DIMENSIONS}

    def averages(self) -> Dict[Dimension, int]:
        return {dim: getattr(self, f"avg_{dim.value}") for dim in DIMENSIONS}

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
