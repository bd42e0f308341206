"""
Configuration
Environment-driven settings for the loopback proxy server and the tunnel client
"""
import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv


LOOPBACK_HOSTS = frozenset({"127.0.0.1", "::1", "localhost"})


def load_environment():
    """Load .env for local runs, same rule as the server entry point"""
    profile = os.getenv("PROFILE", "")
    if profile == "local" or profile == "":
        load_dotenv()


def _str_setting(name: str, default: str) -> str:
    return os.getenv(name, default)


def _int_setting(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be an integer, got {value!r}") from exc


def _float_setting(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    try:
        return float(value)
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be a number, got {value!r}") from exc


def _optional_str_setting(name: str) -> Optional[str]:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return None
    return value


@dataclass(frozen=True)
class ServerSettings:
    """Settings for the loopback-only proxy server"""
    host: str = "127.0.0.1"
    port: int = 8787
    db_path: str = "proxy_events.db"
    replay_buffer_size: int = 512
    heartbeat_seconds: float = 15.0
    disconnect_policy: str = "continue"
    agent_runner: str = "claude"
    claude_command: str = "claude"
    openai_model: str = "gpt-4o-mini"
    proxy_version: str = "0.3.0"

    def __post_init__(self):
        if self.host not in LOOPBACK_HOSTS:
            raise ValueError(f"Proxy server must bind a loopback address, got {self.host!r}")
        if self.disconnect_policy not in ("continue", "cancel"):
            raise ValueError(f"DISCONNECT_POLICY must be 'continue' or 'cancel', got {self.disconnect_policy!r}")
        if self.replay_buffer_size < 1:
            raise ValueError("REPLAY_BUFFER_SIZE must be at least 1")


@dataclass(frozen=True)
class ClientSettings:
    """Settings for the tunnel client and its stream coordinator"""
    remote_host: str = "127.0.0.1"
    remote_port: int = 8787
    ssh_host: Optional[str] = None
    ssh_port: int = 22
    ssh_username: Optional[str] = None
    ssh_key_path: Optional[str] = None
    connect_timeout: float = 10.0
    stream_idle_timeout: float = 45.0
    max_resume_attempts: int = 3
    resume_backoff_seconds: float = 1.0
    cursor_path: Optional[str] = None


def load_server_settings() -> ServerSettings:
    defaults = ServerSettings()
    return ServerSettings(
        host=_str_setting("PROXY_HOST", defaults.host),
        port=_int_setting("PROXY_PORT", defaults.port),
        db_path=_str_setting("PROXY_DB_PATH", defaults.db_path),
        replay_buffer_size=_int_setting("REPLAY_BUFFER_SIZE", defaults.replay_buffer_size),
        heartbeat_seconds=_float_setting("HEARTBEAT_SECONDS", defaults.heartbeat_seconds),
        disconnect_policy=_str_setting("DISCONNECT_POLICY", defaults.disconnect_policy).lower(),
        agent_runner=_str_setting("AGENT_RUNNER", defaults.agent_runner).lower(),
        claude_command=_str_setting("CLAUDE_COMMAND", defaults.claude_command),
        openai_model=_str_setting("OPENAI_MODEL", defaults.openai_model),
        proxy_version=_str_setting("PROXY_VERSION", defaults.proxy_version),
    )


def load_client_settings() -> ClientSettings:
    defaults = ClientSettings()
    return ClientSettings(
        remote_host=_str_setting("PROXY_REMOTE_HOST", defaults.remote_host),
        remote_port=_int_setting("PROXY_REMOTE_PORT", defaults.remote_port),
        ssh_host=_optional_str_setting("SSH_HOST"),
        ssh_port=_int_setting("SSH_PORT", defaults.ssh_port),
        ssh_username=_optional_str_setting("SSH_USERNAME"),
        ssh_key_path=_optional_str_setting("SSH_KEY_PATH"),
        connect_timeout=_float_setting("CONNECT_TIMEOUT", defaults.connect_timeout),
        stream_idle_timeout=_float_setting("STREAM_IDLE_TIMEOUT", defaults.stream_idle_timeout),
        max_resume_attempts=_int_setting("MAX_RESUME_ATTEMPTS", defaults.max_resume_attempts),
        resume_backoff_seconds=_float_setting("RESUME_BACKOFF_SECONDS", defaults.resume_backoff_seconds),
        cursor_path=_optional_str_setting("CURSOR_PATH"),
    )
