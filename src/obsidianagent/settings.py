from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration."""

    host: str = "0.0.0.0"
    port: int = 8000
    debug: bool = True
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_dir: Path = Path("logs")

    model: str = "gpt-4o-mini"
    temperature: float = 0.0
    openai_api_key: str | None = None
    openai_base_url: str | None = "https://api.openai.com/v1"
    model_request_timeout_seconds: float = 120.0

    agent_name: str = "ObsidianAgent"
    max_steps: int = 5
    terminate_tool_name: str = "doTerminate"
    finish_on_final_answer: bool = True
    concurrent_tool_calls: bool = False
    tool_request_timeout_seconds: float = 60.0

    history_load_limit: int = 50
    history_window_threshold: int = 100
    history_window_keep: int = 50

    cors_origins: str = "*"

    redis_url: str | None = None
    session_ttl_seconds: int = 0  # 0 = keep forever

    stream_timeout_seconds: float = 300.0

    agent_system_prompt: str = (
        'You are a professional AI assistant named "ObsidianAgent", integrated '
        "with the Obsidian note-taking app.\n"
        "Your main purpose is to help users manage their knowledge base, notes "
        "and tasks efficiently.\n\n"
        "Workflow:\n"
        " - Analyse the user's intent and solve the problem step by step.\n"
        " - When an operation is needed, pick the best tool from your available "
        "functions.\n"
        " - After every tool execution, look at the result and decide the next "
        "action.\n\n"
        "When the user's request is complete, you must call the doTerminate tool "
        "to end the conversation."
    )
    agent_next_step_prompt: str = (
        "Continue with the next step based on the previous conversation history "
        "and results."
    )

    title_model: str | None = None
    title_max_length: int = 12
    title_system_prompt: str = (
        "You generate conversation titles. Given the user's first message, "
        "produce a short, accurate title.\n"
        "Rules:\n"
        "1. At most 12 characters\n"
        "2. Capture the core topic of the conversation\n"
        "3. No punctuation\n"
        "4. Return only the title, nothing else"
    )

    mcp_server_cmds: str | None = None

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="",
        extra="allow",
    )

    def mcp_commands(self) -> list[str]:
        """Split MCP_SERVER_CMDS (comma separated) into individual commands."""
        if not self.mcp_server_cmds:
            return []
        return [c.strip() for c in self.mcp_server_cmds.split(",") if c.strip()]


def get_settings() -> Settings:
    """Return the application settings singleton (loaded from env / .env)."""
    global _SETTINGS
    try:
        return _SETTINGS
    except NameError:
        _SETTINGS = Settings()
        return _SETTINGS
