"""Encrypted audience voting for theater performances."""

from .engine import VotingEngine, build_engine
from .client import AudienceClient, TheaterClient
from .errors import EngineRevert, RevertCode
from .models import Dimension, RatingInputs, ExternalInput, SessionInfo, DecryptedResults

__all__ = [
    "VotingEngine",
    "build_engine",
    "AudienceClient",
    "TheaterClient",
    "EngineRevert",
    "RevertCode",
    "Dimension",
    "RatingInputs",
    "ExternalInput",
    "SessionInfo",
    "DecryptedResults",
]
