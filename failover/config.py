"""Failover configuration."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Failover settings loaded from environment variables."""

    # Persisted resource identity (written at provisioning time)
    state_file: str = "/etc/keepalived/floating-resource.json"

    # Overrides for values normally read from the state file or metadata
    region: str = ""  # Resolved from instance metadata if empty
    vip: str = ""  # Only needed with a legacy plain-text state file

    # Local interface carrying the VIP
    interface_name: str = "auto"  # "auto" picks the last non-loopback link
    subnet_prefix_length: int = 32

    # Secondary device index the ENI is attached at
    device_index: int = 1

    # Reconciler policy (seconds unless noted)
    settle_interval: float = 5.0
    attach_attempts: int = 3
    local_wait_timeout: float = 30.0
    local_poll_interval: float = 3.0
    run_timeout: float = 75.0
    release_disassociate: bool = False

    # Control-plane call retry policy
    api_max_retries: int = 3
    api_backoff_base: float = 0.5
    api_backoff_max: float = 4.0
    api_connect_timeout: float = 3.0
    api_read_timeout: float = 10.0

    # Instance metadata service (IMDSv2)
    metadata_url: str = "http://169.254.169.254"
    metadata_timeout: float = 2.0
    metadata_token_ttl: int = 60

    # Local command execution
    command_timeout: float = 10.0

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # "json" or "text"
    log_syslog: bool = True
    syslog_address: str = "/dev/log"

    class Config:
        env_prefix = "FAILOVER_"


settings = Settings()
