import os
from dotenv import load_dotenv

# Load variables from the .env file
load_dotenv()


class Settings:
    # Remote analyzer
    ANALYZER_BASE_URL: str = os.getenv("ANALYZER_BASE_URL", "")
    ANALYZER_API_KEY: str = os.getenv("ANALYZER_API_KEY", "")
    ANALYZER_MODEL: str = os.getenv("ANALYZER_MODEL", "gemini-2.0-flash")
    ANALYZER_TIMEOUT_SECONDS: float = float(os.getenv("ANALYZER_TIMEOUT_SECONDS", "60"))

    # Security (empty disables the API key check)
    API_ACCESS_TOKEN: str = os.getenv("API_ACCESS_TOKEN", "")

    # Logging
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
    LOG_FORMAT: str = os.getenv("LOG_FORMAT", "json")


settings = Settings()
