import sys

from pydantic_settings import BaseSettings

_ENV_FILE = None if "pytest" in sys.modules else ".env"


class Settings(BaseSettings):
    APP_VERSION: str = "0.1.0"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # "memory" keeps everything in-process; "cosmos" needs the COSMOS_DB_* keys
    PERSONNEL_STORE: str = "memory"

    COSMOS_DB_ENDPOINT: str = ""
    COSMOS_DB_KEY: str = ""
    COSMOS_DB_DATABASE: str = "sitelogix-db"
    COSMOS_DB_PERSONNEL_CONTAINER: str = "personnel"

    FUZZY_MATCH_THRESHOLD: float = 80.0
    FUZZY_REVIEW_THRESHOLD: float = 85.0
    ALIAS_MATCH_THRESHOLD: float = 85.0
    PREFER_PROJECT_ROSTER: bool = True

    model_config = {
        "env_file": _ENV_FILE,
        "env_file_encoding": "utf-8",
        "case_sensitive": True,
    }


settings = Settings()
