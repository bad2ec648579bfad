"""Configuration management backed by pydantic-settings."""

from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Agent and coordinator settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="DBBENCH_",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    log_level: str = "INFO"
    results_dir: Path = Field(default=Path("./results"))

    # Agent
    agent_name: str = "agent-1"
    agent_queue: str = "dbbench:agent"
    database_log: Path = Field(default=Path("/home/ubuntu/database.log"))
    stop_grace_seconds: float = 10.0
    ready_timeout: float = 60.0
    ready_poll_interval: float = 1.0

    # Redis (control channel between coordinator and agents)
    redis_host: str = "localhost"
    redis_port: int = 6379
    job_timeout: float = 600.0
    job_poll_interval: float = 1.0

    # ZooKeeper
    java_exec: Path = Field(default=Path("/usr/bin/java"))
    zk_work_dir: Path = Field(default=Path("/home/ubuntu/zookeeper"))
    zk_config: Path = Field(default=Path("/home/ubuntu/zookeeper/zookeeper.config"))

    # etcd
    etcd_exec: Path = Field(default=Path("/home/ubuntu/go/bin/etcd"))
    etcd_config: Path = Field(default=Path("/home/ubuntu/etcd.config.yml"))

    # Consul
    consul_exec: Path = Field(default=Path("/home/ubuntu/go/bin/consul"))
    consul_config: Path = Field(default=Path("/home/ubuntu/consul.config.json"))

    # Object Storage (MinIO/S3)
    s3_endpoint: str = "http://localhost:9000"
    s3_access_key: str = "minio"
    s3_secret_key: str = "minio123"
    s3_bucket: str = "dbbench-results"
    s3_region: str = "us-east-1"
    storage_subdirectory: str = ""
    upload_attempts: int = 30
    upload_retry_delay: float = 2.0

    @property
    def redis_url(self) -> str:
        """Build Redis connection string."""
        return f"redis://{self.redis_host}:{self.redis_port}"


# Global settings instance
settings = Settings()
