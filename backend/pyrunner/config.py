"""Application configuration via environment variables."""
import sys
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings

PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent


class Settings(BaseSettings):
    app_name: str = "PyRunner"
    debug: bool = False
    host: str = "0.0.0.0"
    port: int = 3001
    cors_origins: list[str] = ["*"]
    log_level: str = "INFO"
    workspace_root: Path = PROJECT_ROOT / "temp"
    # Execution target
    supported_language: str = "python"
    python_path: str = Field(default_factory=lambda: sys.executable or "python3")
    entry_filename: str = "main.py"
    # Limits
    execution_timeout_ms: int = 30000
    kill_grace_seconds: float = 5.0
    drain_grace_seconds: float = 0.5
    # Streaming
    read_chunk_size: int = 4096
    output_flush_ms: int = 50
    outbox_size: int = 256
    stdin_buffer_limit: int = 65536

    model_config = {"env_prefix": "PYRUNNER_"}

    @property
    def execution_timeout(self) -> float:
        return self.execution_timeout_ms / 1000


settings = Settings()
