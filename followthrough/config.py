"""
Configuration management for FollowThrough.

Two-layer config strategy:
  1. .env file     -> secrets (API keys, app passwords, webhook tokens)
  2. config.yaml   -> preferences (timing windows, delivery channels, paths)

pydantic-settings reads .env files and environment variables automatically.
YAML is loaded manually and merged in, one section per sub-config.

Usage:
    from followthrough.config import load_config
    config = load_config()  # loads .env + config.yaml
    print(config.anthropic.api_key)               # from .env
    print(config.detection.brief_lead_minutes)    # from config.yaml
"""

from pydantic_settings import BaseSettings
from pydantic import Field
from pathlib import Path
from typing import List
import yaml


class GoogleConfig(BaseSettings):
    """Google Calendar, Drive (Meet recordings) and Gmail (drafts) access."""
    enabled: bool = True
    credentials_path: str = "./credentials.json"
    token_path: str = "./token.json"
    scopes: List[str] = [
        "https://www.googleapis.com/auth/calendar",
        "https://www.googleapis.com/auth/drive.readonly",
        "https://www.googleapis.com/auth/gmail.compose",
    ]
    calendar_ids: List[str] = ["primary"]
    lookahead_hours: int = 24  # How far ahead a sync looks
    webhook_address: str = ""  # Public HTTPS URL for push notifications

    model_config = {"env_prefix": "GOOGLE_"}


class AnthropicConfig(BaseSettings):
    """Claude AI API configuration."""
    api_key: str = ""
    model: str = "claude-sonnet-4-20250514"
    max_tokens: int = 1024
    temperature: float = 0.7

    model_config = {"env_prefix": "ANTHROPIC_"}


class EmailConfig(BaseSettings):
    """Brief delivery over Gmail SMTP."""
    sender: str = ""
    app_password: str = ""
    recipient: str = ""
    smtp_server: str = "smtp.gmail.com"
    smtp_port: int = 587
    subject_template: str = "Meeting Brief: {title}"

    model_config = {"env_prefix": "EMAIL_"}


class SlackConfig(BaseSettings):
    """Slack incoming webhook for brief delivery."""
    enabled: bool = False
    webhook_url: str = ""
    timeout_seconds: int = 10

    model_config = {"env_prefix": "SLACK_"}


class DeliveryConfig(BaseSettings):
    """Where and when briefs get delivered."""
    default_methods: List[str] = ["email", "dashboard"]
    hours_before_meeting: int = 24
    business_hours_only: bool = True
    business_day_start_hour: int = 9
    business_day_end_hour: int = 17


class DetectionConfig(BaseSettings):
    """Meeting lifecycle detection timing."""
    poll_interval_seconds: int = 60
    starting_window_minutes: int = 5   # "starting" once this close to start
    brief_lead_minutes: int = 30       # Briefs fire this long before start
    lookaround_minutes: int = 10       # Periodic check window around now


class PollingConfig(BaseSettings):
    """Recording/transcript availability polling after a meeting ends."""
    recording_check_interval_minutes: int = 5
    max_recording_checks: int = 12


class SessionConfig(BaseSettings):
    """Workflow session storage and housekeeping."""
    store_path: str = "./sessions.json"
    notes_path: str = "./meeting_notes.json"
    tasks_path: str = "./tasks.json"
    archive_after_days: int = 30
    stale_after_minutes: int = 60
    max_retries: int = 3

    model_config = {"env_prefix": "SESSIONS_"}


class WorkflowConfig(BaseSettings):
    """Default options for new calendar workflows."""
    use_rag: bool = True
    generate_brief: bool = True
    deliver_brief: bool = True
    monitor_meeting: bool = True
    process_post_meeting: bool = True
    generate_follow_ups: bool = True
    autonomy_level: str = "assisted"
    max_wait_time_minutes: int = 60
    retry_attempts: int = 3


class SchedulerConfig(BaseSettings):
    """Background job schedule."""
    sync_hour: int = 7         # Daily full calendar sync
    sync_minute: int = 0
    archive_hour: int = 2      # Nightly archival of finished sessions
    timezone: str = "America/New_York"
    weekdays_only: bool = False


class ServerConfig(BaseSettings):
    """Web app / webhook receiver."""
    host: str = "127.0.0.1"
    port: int = 5000
    webhook_token: str = ""

    model_config = {"env_prefix": "SERVER_"}


class AppConfig(BaseSettings):
    """
    Root configuration that combines all sub-configs.

    Load order (later overrides earlier):
    1. Default values defined here
    2. config.yaml file
    3. .env file
    4. Environment variables
    """
    google: GoogleConfig = Field(default_factory=GoogleConfig)
    anthropic: AnthropicConfig = Field(default_factory=AnthropicConfig)
    email: EmailConfig = Field(default_factory=EmailConfig)
    slack: SlackConfig = Field(default_factory=SlackConfig)
    delivery: DeliveryConfig = Field(default_factory=DeliveryConfig)
    detection: DetectionConfig = Field(default_factory=DetectionConfig)
    polling: PollingConfig = Field(default_factory=PollingConfig)
    sessions: SessionConfig = Field(default_factory=SessionConfig)
    workflow: WorkflowConfig = Field(default_factory=WorkflowConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    user_id: str = "me"
    log_level: str = "INFO"
    timezone: str = "America/New_York"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}


def load_config(config_path: str = "config.yaml") -> AppConfig:
    """
    Load configuration from YAML file + .env overrides.

    Each top-level YAML section (google, anthropic, email, ...) feeds the
    matching sub-config. Missing sections fall back to defaults.

    Args:
        config_path: Path to YAML config file (default: config.yaml)

    Returns:
        AppConfig with all settings merged
    """
    yaml_data = {}
    config_file = Path(config_path)

    if config_file.exists():
        with open(config_file) as f:
            yaml_data = yaml.safe_load(f) or {}

    return AppConfig(
        google=GoogleConfig(**yaml_data.get("google", {})),
        anthropic=AnthropicConfig(**yaml_data.get("anthropic", {})),
        email=EmailConfig(**yaml_data.get("email", {})),
        slack=SlackConfig(**yaml_data.get("slack", {})),
        delivery=DeliveryConfig(**yaml_data.get("delivery", {})),
        detection=DetectionConfig(**yaml_data.get("detection", {})),
        polling=PollingConfig(**yaml_data.get("polling", {})),
        sessions=SessionConfig(**yaml_data.get("sessions", {})),
        workflow=WorkflowConfig(**yaml_data.get("workflow", {})),
        scheduler=SchedulerConfig(**yaml_data.get("scheduler", {})),
        server=ServerConfig(**yaml_data.get("server", {})),
        user_id=yaml_data.get("user_id", "me"),
        log_level=yaml_data.get("log_level", "INFO"),
        timezone=yaml_data.get("timezone", "America/New_York"),
    )
