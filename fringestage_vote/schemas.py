# fringestage_vote/schemas.py
from pydantic import BaseModel, Field

from .models import ExternalInput, RatingInputs


class CreateSessionRequest(BaseModel):
    title: str
    venue: str
    start_time: int = Field(ge=0)
    end_time: int = Field(ge=0)


class ExternalInputModel(BaseModel):
    handle: str
    proof: str

    def to_input(self) -> ExternalInput:
        return ExternalInput(handle=self.handle, proof=self.proof)


class SubmitVoteRequest(BaseModel):
    plot_tension: ExternalInputModel
    performance: ExternalInputModel
    stage_design: ExternalInputModel
    pacing: ExternalInputModel
    comment_hash: str  # 0x-prefixed SHA-256 of the comment, never the comment itself

    def to_inputs(self) -> RatingInputs:
        return RatingInputs(
            plot_tension=self.plot_tension.to_input(),
            performance=self.performance.to_input(),
            stage_design=self.stage_design.to_input(),
            pacing=self.pacing.to_input(),
        )


class AuthorizeRequest(BaseModel):
    address: str


class StoreResultsRequest(BaseModel):
    total_plot_tension: int = Field(ge=0)
    total_performance: int = Field(ge=0)
    total_stage_design: int = Field(ge=0)
    total_pacing: int = Field(ge=0)


class RegisterInputRequest(BaseModel):
    ciphertext: str  # Decimal string; Paillier ciphertexts overflow JSON numbers
    exponent: int = 0  # Integer encodings only; anything else is rejected
