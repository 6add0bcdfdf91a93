"""Global configuration — loaded from environment variables."""

from pathlib import Path

from pydantic_settings import BaseSettings


class VigilSettings(BaseSettings):
    # Probe layer
    proc_root: Path = Path("/proc")
    clk_tck: int = 100  # scheduler ticks per second
    page_size: int = 4096  # bytes per statm page
    probe_timeout_seconds: float = 5.0  # bound on one ps/pgrep call
    probe_cache_expire: float = 1.0  # memory/children reads reused for this long

    # Check engine
    check_every: float = 5.0
    children_update_period: float = 30.0  # must stay above probe_cache_expire

    log_level: str = "INFO"

    model_config = {"env_prefix": "PROCVIGIL_"}


settings = VigilSettings()
