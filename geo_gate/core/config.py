"""
Runtime configuration for the GeoGate engine.
"""

import os
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator

from .logging_config import get_logger
from .policy import CapabilityFlags

logger = get_logger(__name__)

DEFAULT_DATASET_URL = "https://raw.githubusercontent.com/ipverse/rir-ip/master/country"
DEFAULT_DATASET_DIR = "/usr/share/geoip-countrylist"


class EngineSettings(BaseModel):
    """Settings that are not part of the policy itself."""

    dataset_dir: Optional[Path] = Field(default=Path(DEFAULT_DATASET_DIR))
    dataset_url: Optional[str] = None
    dataset_timeout: float = 30.0
    dataset_workers: int = 8
    ipv6: str = "auto"  # auto, true, false
    lock_file: Path = Path("/run/geo-gate.lock")
    ipset_hashsize: int = 1024
    ipset_maxelem: int = 65536
    use_sudo: bool = False

    @field_validator("ipv6", mode="before")
    @classmethod
    def validate_ipv6(cls, v):
        if isinstance(v, bool):
            return "true" if v else "false"
        v = str(v).strip().lower()
        if v not in ("auto", "true", "false"):
            raise ValueError(f"ipv6 must be one of auto, true, false: {v}")
        return v

    @field_validator("dataset_timeout", "dataset_workers")
    @classmethod
    def validate_positive(cls, v, info):
        if v <= 0:
            raise ValueError(f"{info.field_name} must be positive, got {v}")
        return v

    def capabilities(self) -> CapabilityFlags:
        if self.ipv6 == "auto":
            return CapabilityFlags.detect()
        return CapabilityFlags(ipv6_enabled=self.ipv6 == "true")

    @classmethod
    def load(
        cls,
        file_settings: Optional[Dict[str, Any]] = None,
        overrides: Optional[Dict[str, Any]] = None,
    ) -> "EngineSettings":
        """
        Build settings from defaults, the policy file's ``settings`` section,
        environment variables and explicit overrides, in that order.
        """
        data: Dict[str, Any] = dict(file_settings or {})
        data.update(cls._from_env())
        data.update({k: v for k, v in (overrides or {}).items() if v is not None})
        return cls(**data)

    @staticmethod
    def _from_env() -> Dict[str, Any]:
        env_map = {
            "GEO_GATE_DATASET_DIR": "dataset_dir",
            "GEO_GATE_DATASET_URL": "dataset_url",
            "GEO_GATE_DATASET_TIMEOUT": "dataset_timeout",
            "GEO_GATE_DATASET_WORKERS": "dataset_workers",
            "GEO_GATE_IPV6": "ipv6",
            "GEO_GATE_LOCK_FILE": "lock_file",
        }
        values = {}
        for env_name, field_name in env_map.items():
            value = os.getenv(env_name)
            if value:
                logger.debug("Setting %s from %s", field_name, env_name)
                values[field_name] = value
        return values
