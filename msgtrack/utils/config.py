import os
from dataclasses import dataclass


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, "").strip()
    return int(raw) if raw else default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name, "").strip()
    return float(raw) if raw else default


@dataclass
class Settings:
    """Runtime settings for the tracker.

    Attributes:
        data_dir (str): Directory holding the JSONL document store
        log_dir (str): Directory for the DEBUG log file
        push_target (str): host:port of the gRPC push gateway, empty to only log
        retry_attempts (int): Store write attempts before a message is failed
        retry_base_delay (float): First backoff delay in seconds
        push_timeout (float): Deadline in seconds for one push RPC
    """
    data_dir: str = "msgtrack/data"
    log_dir: str = os.path.join(os.path.dirname(os.path.dirname(__file__)), "logs")
    push_target: str = ""
    retry_attempts: int = 3
    retry_base_delay: float = 0.5
    push_timeout: float = 5.0

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from MSGTRACK_* environment variables.

        Returns:
            Settings: Values from the environment, defaults where unset
        """
        defaults = cls()
        return cls(
            data_dir=os.environ.get("MSGTRACK_DATA_DIR") or defaults.data_dir,
            log_dir=os.environ.get("MSGTRACK_LOG_DIR") or defaults.log_dir,
            push_target=os.environ.get("MSGTRACK_PUSH_TARGET", defaults.push_target).strip(),
            retry_attempts=_env_int("MSGTRACK_RETRY_ATTEMPTS", defaults.retry_attempts),
            retry_base_delay=_env_float("MSGTRACK_RETRY_BASE_DELAY", defaults.retry_base_delay),
            push_timeout=_env_float("MSGTRACK_PUSH_TIMEOUT", defaults.push_timeout),
        )
