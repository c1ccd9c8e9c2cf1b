"""Top-level configuration for agenttrace.

Usage:
    from agenttrace.config import AgentTraceConfig

    # Defaults: in-memory store, default rate table and thresholds
    config = AgentTraceConfig()

    # From a JSON file
    config = AgentTraceConfig.load("agenttrace.json")

    # From the environment (.env is loaded first)
    config = AgentTraceConfig.from_env()

Environment variables:
    AGENTTRACE_CONFIG          path to a JSON config file
    AGENTTRACE_STORAGE_PATH    directory for the file-backed graph store
    AGENTTRACE_WEBHOOK_URL     URL that receives notifications
    AGENTTRACE_LIVE_*          see agenttrace.replay.live
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

from agenttrace.anomaly.config import AnomalyConfig
from agenttrace.correlation.costs import CostRateTable
from agenttrace.correlation.notifications import NotificationConfig
from agenttrace.replay.live import LiveLLMConfig
from agenttrace.replay.side_effects import SideEffectConfig

logger = logging.getLogger(__name__)


@dataclass
class AgentTraceConfig:
    """Configuration for ingestion, detection and replay."""

    storage_path: str | None = None
    rates: CostRateTable = field(default_factory=CostRateTable)
    anomaly: AnomalyConfig = field(default_factory=AnomalyConfig)
    side_effects: SideEffectConfig = field(default_factory=SideEffectConfig)
    notifications: NotificationConfig = field(default_factory=NotificationConfig)
    live: LiveLLMConfig = field(default_factory=LiveLLMConfig)

    def to_dict(self) -> dict[str, Any]:
        return {
            "storage_path": self.storage_path,
            "rates": self.rates.to_dict(),
            "anomaly": self.anomaly.to_dict(),
            "side_effects": self.side_effects.to_dict(),
            "notifications": self.notifications.to_dict(),
            "live": self.live.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AgentTraceConfig:
        return cls(
            storage_path=data.get("storage_path"),
            rates=CostRateTable.from_dict(data.get("rates", {})),
            anomaly=AnomalyConfig.from_dict(data.get("anomaly", {})),
            side_effects=SideEffectConfig.from_dict(data.get("side_effects", {})),
            notifications=NotificationConfig.from_dict(data.get("notifications", {})),
            live=LiveLLMConfig.from_dict(data.get("live", {})),
        )

    @classmethod
    def load(cls, path: str | Path) -> AgentTraceConfig:
        """Load configuration from a JSON file."""
        path = Path(path)
        data = json.loads(path.read_text(encoding="utf-8"))
        logger.info(f"Loaded configuration from {path}")
        return cls.from_dict(data)

    def save(self, path: str | Path) -> Path:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(self.to_dict(), indent=2), encoding="utf-8")
        return path

    @classmethod
    def from_env(cls) -> AgentTraceConfig:
        """Build configuration from environment variables."""
        load_dotenv()

        config_path = os.getenv("AGENTTRACE_CONFIG")
        config = cls.load(config_path) if config_path else cls()

        storage_path = os.getenv("AGENTTRACE_STORAGE_PATH")
        if storage_path:
            config.storage_path = storage_path

        webhook_url = os.getenv("AGENTTRACE_WEBHOOK_URL")
        if webhook_url:
            config.notifications.webhook_url = webhook_url

        live = LiveLLMConfig.from_env()
        if os.getenv("AGENTTRACE_LIVE_MODEL"):
            config.live.default_model = live.default_model
        if live.api_base:
            config.live.api_base = live.api_base
        if os.getenv("AGENTTRACE_LIVE_TIMEOUT"):
            config.live.timeout_seconds = live.timeout_seconds

        return config
