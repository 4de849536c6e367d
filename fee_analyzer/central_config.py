"""
Project Configuration — input paths, policies, version
======================================================

Run configuration for one analysis, read from the environment (optionally a
.env file) and overridable from the command line.
"""

import os
import re
from dataclasses import dataclass
from importlib.metadata import version, PackageNotFoundError
from pathlib import Path
from typing import Mapping, Optional

from dotenv import load_dotenv

from fee_analyzer.errors import ConfigError

# Version — single source of truth is pyproject.toml
try:
    PROJECT_VERSION = version("v3-fee-analyzer")
except PackageNotFoundError:
    # Dev / CI: package not installed — read pyproject.toml directly
    _toml = Path(__file__).resolve().parent.parent / "pyproject.toml"
    _m = (
        re.search(r'version\s*=\s*"([^"]+)"', _toml.read_text())
        if _toml.exists()
        else None
    )
    PROJECT_VERSION = _m.group(1) if _m else "0.0.0-dev"
PROJECT_NAME = "V3 Fee Analyzer"

POLICY_ABORT = "abort"
POLICY_SKIP = "skip"
POSITION_ERROR_POLICIES = (POLICY_ABORT, POLICY_SKIP)

# env var → AnalyzerConfig field
ENV_PATHS = {
    "INITIALIZE_CSV_FILE_PATH": "initialize_csv",
    "POOL_CREATED_CSV_FILE_PATH": "pool_created_csv",
    "MINT_CSV_FILE_PATH": "mint_csv",
    "DECREASE_CSV_FILE_PATH": "decrease_csv",
    "SWAP_CSV_FILE_PATH": "swap_csv",
}

_TRUTHY = {"1", "true", "yes", "on"}
_FALSY = {"0", "false", "no", "off", ""}


@dataclass(frozen=True)
class AnalyzerConfig:
    """Everything one analysis run needs."""

    initialize_csv: str
    pool_created_csv: str
    mint_csv: str
    decrease_csv: str
    swap_csv: str
    weth_address: str
    output_csv: str = "output/position_fees.csv"
    rpc_url: Optional[str] = None
    tolerate_zero_liquidity: bool = False
    position_error_policy: str = POLICY_ABORT
    workers: int = 1

    def __post_init__(self):
        if self.position_error_policy not in POSITION_ERROR_POLICIES:
            raise ConfigError(
                f"position_error_policy must be one of {POSITION_ERROR_POLICIES}, "
                f"got {self.position_error_policy!r}"
            )
        if self.workers < 1:
            raise ConfigError(f"workers must be >= 1, got {self.workers}")

    @property
    def csv_paths(self) -> dict:
        """Input paths keyed by collection name."""
        return {
            "initialize": self.initialize_csv,
            "pool_created": self.pool_created_csv,
            "mint": self.mint_csv,
            "decrease": self.decrease_csv,
            "swap": self.swap_csv,
        }

    @classmethod
    def from_env(
        cls,
        env: Optional[Mapping[str, str]] = None,
        dotenv_path: Optional[str] = None,
        overrides: Optional[Mapping[str, object]] = None,
    ) -> "AnalyzerConfig":
        """
        Build a config from environment variables.

        When `env` is None the process environment is used, after loading
        `.env` (or `dotenv_path`) without overriding variables already set.
        `overrides` (keyed by variable name, None values ignored) win over
        both, which is how command-line flags are applied.

        Raises:
            ConfigError: a required variable is missing or a value is invalid.
        """
        if env is None:
            load_dotenv(dotenv_path)
            env = os.environ
        env = dict(env)
        env.update({k: str(v) for k, v in (overrides or {}).items() if v is not None})

        missing = [name for name in (*ENV_PATHS, "WETH_ADDRESS") if not env.get(name)]
        if missing:
            raise ConfigError(f"missing required environment variable(s): {', '.join(missing)}")

        kwargs = {field_name: env[name] for name, field_name in ENV_PATHS.items()}
        kwargs["weth_address"] = env["WETH_ADDRESS"]
        if env.get("OUTPUT_CSV_FILE_PATH"):
            kwargs["output_csv"] = env["OUTPUT_CSV_FILE_PATH"]
        kwargs["rpc_url"] = env.get("HTTP_URL") or None
        kwargs["tolerate_zero_liquidity"] = _parse_bool(
            "TOLERATE_ZERO_LIQUIDITY", env.get("TOLERATE_ZERO_LIQUIDITY", "")
        )
        kwargs["position_error_policy"] = (env.get("POSITION_ERROR_POLICY") or POLICY_ABORT).lower()
        kwargs["workers"] = _parse_int("WORKERS", env.get("WORKERS") or "1")
        return cls(**kwargs)


def _parse_bool(name: str, raw: str) -> bool:
    value = raw.strip().lower()
    if value in _TRUTHY:
        return True
    if value in _FALSY:
        return False
    raise ConfigError(f"{name} must be a boolean, got {raw!r}")


def _parse_int(name: str, raw: str) -> int:
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from None
