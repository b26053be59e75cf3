import tempfile
from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    host: str = "127.0.0.1"
    port: int = 8080
    log_level: str = "INFO"

    binwalk_path: str = "binwalk"
    output_root: Path = Path(tempfile.gettempdir()) / "binwalk-web"
    engine_workers: Optional[int] = None  # defaults to CPU count
    analysis_timeout: Optional[float] = None  # seconds, unset = wait forever
    artifact_ttl: Optional[int] = None  # seconds, unset = keep until restart

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
    )


settings = Settings()
