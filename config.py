import os
from functools import lru_cache
from pathlib import Path
from typing import Optional


class Settings:
    def __init__(
        self,
        database_url: str,
        session_secret: str,
        session_max_age_secs: int,
        gemini_api_key: Optional[str],
        gemini_model: str,
        insight_ttl_secs: float,
        assistant_language: str,
        google_client_id: Optional[str] = None,
        google_client_secret: Optional[str] = None,
    ) -> None:
        self.database_url = database_url
        self.session_secret = session_secret
        self.session_max_age_secs = session_max_age_secs
        self.gemini_api_key = gemini_api_key
        self.gemini_model = gemini_model
        self.insight_ttl_secs = insight_ttl_secs
        self.assistant_language = assistant_language
        self.google_client_id = google_client_id
        self.google_client_secret = google_client_secret


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("DANAWISE_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "danawise.db"
    database_url = os.getenv("DANAWISE_DATABASE_URL", f"sqlite:///{default_db}")
    session_secret = os.getenv(
        "DANAWISE_SESSION_SECRET",
        "3f9c2d8e71b54a0c9e6f1d2b8a7c4e5f60718293a4b5c6d7e8f90a1b2c3d4e5f",
    )
    session_max_age_secs = int(os.getenv("DANAWISE_SESSION_MAX_AGE_SECS", "7200"))
    gemini_api_key = os.getenv("GOOGLE_GENERATIVE_AI_API_KEY") or None
    gemini_model = os.getenv("DANAWISE_GEMINI_MODEL", "gemini-2.0-flash")
    insight_ttl_secs = float(os.getenv("DANAWISE_INSIGHT_TTL_SECS", "300"))
    assistant_language = os.getenv("DANAWISE_ASSISTANT_LANGUAGE", "Bahasa Indonesia")
    return Settings(
        database_url=database_url,
        session_secret=session_secret,
        session_max_age_secs=session_max_age_secs,
        gemini_api_key=gemini_api_key,
        gemini_model=gemini_model,
        insight_ttl_secs=insight_ttl_secs,
        assistant_language=assistant_language,
        google_client_id=os.getenv("GOOGLE_CLIENT_ID") or None,
        google_client_secret=os.getenv("GOOGLE_CLIENT_SECRET") or None,
    )
