import os
from pathlib import Path
from pydantic import BaseModel
from dotenv import load_dotenv

ENV_PATH = Path(__file__).resolve().parents[1] / ".env"
if ENV_PATH.exists():
    # ensure .env values override empty/previous env
    load_dotenv(ENV_PATH, override=True)

DEFAULT_DATABASE_URL = "sqlite:///" + str(Path(__file__).resolve().parents[1] / "luckydraw.db")


class Settings(BaseModel):
    database_url: str = os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL)
    sqlite_busy_timeout: float = float(os.getenv("SQLITE_BUSY_TIMEOUT", "30"))

    jwt_secret: str = os.getenv("JWT_SECRET", "dev_change_me")
    admin_password: str = os.getenv("ADMIN_PASSWORD", "")
    admin_password_hash: str = os.getenv("ADMIN_PASSWORD_HASH", "")  # bcrypt hash
    admin_token_hours: int = int(os.getenv("ADMIN_TOKEN_HOURS", "24"))
    admin_operator_id: int = int(os.getenv("ADMIN_OPERATOR_ID", "1"))

    allowed_origins: list[str] = [
        o.strip() for o in os.getenv("ALLOWED_ORIGINS", "").split(",") if o.strip()
    ]
    allowed_origin_regex: str | None = os.getenv("ALLOWED_ORIGIN_REGEX") or None

    default_code_format: str = os.getenv("DEFAULT_CODE_FORMAT", "8_digit_number")
    default_max_lottery_codes: int = int(os.getenv("DEFAULT_MAX_LOTTERY_CODES", "1000"))
    max_batch_codes: int = int(os.getenv("MAX_BATCH_CODES", "1000"))

    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    log_file: str | None = os.getenv("LOG_FILE") or None

settings = Settings()
