from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Ledger store
    DATABASE_URL: str = "sqlite:///fringestage_vote.db"

    # Identity the engine uses for permission grants and input proofs
    ENGINE_ADDRESS: str = "0x5f1e57a9e0000000000000000000000000f5a7e0"

    # Decryption eligibility. Raise this in production: small samples can be
    # de-anonymized from the aggregate.
    MIN_VOTES_FOR_DECRYPTION: int = 1
    DECRYPTION_REQUIRES_END_TIME: bool = False

    # FHE coprocessor
    FHE_KEY_PATH: str = "fringestage_fhe_keys.json"
    FHE_KEY_BITS: int = 2048

    # Rating scale enforced by the client layer
    RATING_MIN: int = 0
    RATING_MAX: int = 100

    # API
    API_HOST: str = "0.0.0.0"
    API_PORT: int = 8080

    # Logging
    LOG_LEVEL: str = "INFO"

    class Config:
        env_file = ".env"
        extra = "allow"  # Allow extra environment variables


@lru_cache
def get_settings() -> Settings:
    return Settings()
