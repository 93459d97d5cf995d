"""
Harness configuration.

All tunables live in one pydantic model tree so a harness run can be
reproduced from a single JSON document. Environment variables prefixed
with VIGIL_ override the defaults (see HarnessSettings.from_env).

Design principles:
- Defaults match the behaviour the monitors were calibrated against
- Keyword lists and windows are data, not code
- No hidden environment inference outside from_env()
"""

import os
from pathlib import Path
from typing import Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field


DEFAULT_BASE_DIR = Path.home() / ".vigil" / "sessions"

MB = 1024 * 1024
GB = 1024 * MB


class LoggerSettings(BaseModel):
    """Structured logger buffering, rotation and pattern detection."""

    model_config = ConfigDict(extra="forbid")

    buffer_cap: int = 1000
    trim_batch: int = 500
    max_file_bytes: int = 50 * MB

    # Success/failure gap heuristic. Approximate by nature, so tunable.
    gap_window_seconds: float = 5.0
    success_keywords: List[str] = Field(default_factory=lambda: ["success"])


class InterceptorSettings(BaseModel):
    """Diagnostic channel interception."""

    model_config = ConfigDict(extra="forbid")

    enabled: bool = True
    preserve_output: bool = True
    capture_stack: bool = True
    max_stack_depth: int = 8
    methods: List[str] = Field(
        default_factory=lambda: [
            "log", "trace", "debug", "info", "warn", "warning",
            "error", "critical", "exception",
        ]
    )
    filter_patterns: List[str] = Field(default_factory=list)
    self_tags: List[str] = Field(default_factory=lambda: ["[VIGIL"])

    # Serializer bounds
    max_depth: int = 3
    max_keys: int = 20
    max_items: int = 10


class RetentionSettings(BaseModel):
    """Session retention limits, applied age -> count -> bytes."""

    model_config = ConfigDict(extra="forbid")

    max_age_days: float = 30.0
    max_sessions: int = 50
    max_storage_bytes: int = 2 * GB


class StateMonitorSettings(BaseModel):
    """Periodic and mutation-triggered state capture."""

    model_config = ConfigDict(extra="forbid")

    enabled: bool = True
    capture_interval_seconds: float = 1.0
    history_cap: int = 100
    text_noise_threshold: int = 50
    size_noise_threshold: float = 10.0

    # Class names that mark state-bearing regions of the node tree
    panel_class: str = "side-panel"
    indicator_class: str = "ribbon-indicator"
    indicator_active_class: str = "is-active"
    highlight_class: str = "edit-highlight"
    editor_class: str = "editor-content"


class WorkflowSettings(BaseModel):
    """Shared tunables for the workflow health monitors."""

    model_config = ConfigDict(extra="forbid")

    enabled: bool = True
    poll_interval_seconds: float = 2.0
    chat_poll_interval_seconds: float = 1.0
    stall_timeout_seconds: float = 30.0
    edit_timeout_seconds: float = 15.0
    highlight_grace_seconds: float = 5.0
    cleanup_after_seconds: float = 300.0
    score_window: int = 20
    failure_history_cap: int = 100
    check_history_cap: int = 100


class ReportSettings(BaseModel):
    """Report aggregation and output."""

    model_config = ConfigDict(extra="forbid")

    auto_generate: bool = True
    recent_failure_minutes: float = 10.0
    recent_entry_limit: int = 100


class HarnessSettings(BaseModel):
    """
    Complete harness configuration.

    Attributes:
        base_dir: Directory holding one subdirectory per session
        cleanup_on_exit: Run retention after the harness stops
        metadata_refresh_seconds: How often a live session's entry count
            and size are written to session.json
    """

    model_config = ConfigDict(extra="forbid")

    base_dir: Path = DEFAULT_BASE_DIR
    cleanup_on_exit: bool = True
    metadata_refresh_seconds: float = 5.0

    logger: LoggerSettings = Field(default_factory=LoggerSettings)
    interceptor: InterceptorSettings = Field(default_factory=InterceptorSettings)
    retention: RetentionSettings = Field(default_factory=RetentionSettings)
    state: StateMonitorSettings = Field(default_factory=StateMonitorSettings)
    workflow: WorkflowSettings = Field(default_factory=WorkflowSettings)
    report: ReportSettings = Field(default_factory=ReportSettings)

    @classmethod
    def from_env(
        cls,
        environ: Optional[Mapping[str, str]] = None,
        **overrides,
    ) -> "HarnessSettings":
        """
        Build settings from VIGIL_* environment variables.

        Args:
            environ: Mapping to read instead of os.environ (tests)
            overrides: Top-level fields applied after the environment

        Returns:
            HarnessSettings instance

        Raises:
            pydantic.ValidationError: A variable holds an unparseable value
        """
        env = os.environ if environ is None else environ
        data: Dict[str, Dict[str, object]] = {
            "logger": {},
            "interceptor": {},
            "retention": {},
            "state": {},
            "workflow": {},
        }
        top: Dict[str, object] = {}

        if "VIGIL_BASE_DIR" in env:
            top["base_dir"] = env["VIGIL_BASE_DIR"]
        if "VIGIL_MAX_FILE_BYTES" in env:
            data["logger"]["max_file_bytes"] = env["VIGIL_MAX_FILE_BYTES"]
        if "VIGIL_RETENTION_DAYS" in env:
            data["retention"]["max_age_days"] = env["VIGIL_RETENTION_DAYS"]
        if "VIGIL_MAX_SESSIONS" in env:
            data["retention"]["max_sessions"] = env["VIGIL_MAX_SESSIONS"]
        if "VIGIL_MAX_STORAGE_BYTES" in env:
            data["retention"]["max_storage_bytes"] = env["VIGIL_MAX_STORAGE_BYTES"]
        if "VIGIL_CAPTURE_INTERVAL" in env:
            data["state"]["capture_interval_seconds"] = env["VIGIL_CAPTURE_INTERVAL"]
        if "VIGIL_STALL_TIMEOUT" in env:
            data["workflow"]["stall_timeout_seconds"] = env["VIGIL_STALL_TIMEOUT"]
        if "VIGIL_PRESERVE_OUTPUT" in env:
            data["interceptor"]["preserve_output"] = env["VIGIL_PRESERVE_OUTPUT"]

        payload: Dict[str, object] = {k: v for k, v in data.items() if v}
        payload.update(top)
        payload.update(overrides)
        return cls.model_validate(payload)
