"""
fringestage_vote/client.py - Client Encryption & Submission Layer

Plaintext ratings and comments exist only here. What reaches the engine is
ciphertext handles with input proofs, and a SHA-256 digest of the comment.
"""
import hashlib
import logging
from typing import Dict, Optional

from .config import Settings, get_settings
from .engine import VotingEngine
from .models import (
    Dimension,
    DIMENSIONS,
    ExternalInput,
    RatingInputs,
    SessionInfo,
    DecryptedResults,
    normalize_address,
)

logger = logging.getLogger(__name__)

DEFAULT_SESSION_DURATION = 86400  # 1 day


def comment_digest(comment: str) -> bytes:
    return hashlib.sha256(comment.encode("utf-8")).digest()


class FringeStageClient:
    """Acts on the engine as one address."""

    def __init__(self, engine: VotingEngine, address: str, settings: Optional[Settings] = None):
        self.engine = engine
        self.address = normalize_address(address)
        self.settings = settings or get_settings()

    def encrypt(self, value: int) -> ExternalInput:
        """
        Encrypt `value` under the coprocessor public key and register it as
        an input bound to this address and the engine.
        """
        coprocessor = self.engine.coprocessor
        ciphertext = coprocessor.public_key.encrypt(value)
        return coprocessor.register_input(ciphertext, self.engine.address, self.address)

    def session_info(self, session_id: int) -> SessionInfo:
        return self.engine.get_session_info(session_id)

    def results(self, session_id: int) -> DecryptedResults:
        return self.engine.get_decrypted_results(session_id)


class AudienceClient(FringeStageClient):

    def vote(self, session_id: int, plot_tension: int, performance: int, stage_design: int,
             pacing: int, comment: str = "") -> None:
        """
        Encrypt and submit one rating per dimension.

        Raises:
            ValueError: if any rating is outside the configured scale. Nothing
                is encrypted or submitted in that case.
        """
        values = {
            Dimension.PLOT_TENSION: plot_tension,
            Dimension.PERFORMANCE: performance,
            Dimension.STAGE_DESIGN: stage_design,
            Dimension.PACING: pacing,
        }
        low, high = self.settings.RATING_MIN, self.settings.RATING_MAX
        for dim, value in values.items():
            if isinstance(value, bool) or not isinstance(value, int) or not low <= value <= high:
                raise ValueError(f"All ratings must be between {low} and {high} ({dim.value}={value!r})")

        inputs = RatingInputs(**{dim.value: self.encrypt(values[dim]) for dim in DIMENSIONS})
        self.engine.submit_vote(self.address, session_id, inputs, comment_digest(comment))


class TheaterClient(FringeStageClient):

    def create_session(self, title: str, venue: str, duration: int = DEFAULT_SESSION_DURATION,
                       start_time: Optional[int] = None) -> int:
        """Open a session starting now (or at `start_time`) lasting `duration` seconds."""
        start = self.engine.ledger.now() if start_time is None else start_time
        return self.engine.create_session(self.address, title, venue, start, start + duration)

    def end_session(self, session_id: int) -> None:
        self.engine.end_session(self.address, session_id)

    def authorize(self, session_id: int, address: str) -> None:
        self.engine.authorize_theater(self.address, session_id, address)

    def request_decryption(self, session_id: int) -> None:
        self.engine.request_decryption(self.address, session_id)

    def decrypt_aggregates(self, session_id: int) -> Dict[Dimension, int]:
        """
        Decrypt the four accumulator handles through the coprocessor.

        Needs a grant on the current handles, i.e. a decryption request made
        (or an authorization granted) after the last vote.
        """
        aggregates = self.engine.get_encrypted_aggregates(session_id)
        coprocessor = self.engine.coprocessor
        return {
            dim: coprocessor.user_decrypt(getattr(aggregates, dim.value), self.engine.address, self.address)
            for dim in DIMENSIONS
        }

    def decrypt_and_store(self, session_id: int) -> DecryptedResults:
        """
        Decrypt the totals and publish them in one go.

        This is the local round trip; in a deployment with a decryption
        oracle the oracle performs the decryption and the store.
        """
        totals = self.decrypt_aggregates(session_id)
        self.engine.store_decrypted_results(
            self.address,
            session_id,
            totals[Dimension.PLOT_TENSION],
            totals[Dimension.PERFORMANCE],
            totals[Dimension.STAGE_DESIGN],
            totals[Dimension.PACING],
        )
        logger.info("Decrypted and stored results for session %d", session_id)
        return self.engine.get_decrypted_results(session_id)
