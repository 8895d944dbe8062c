"""Configuration management with validation.

Failure policies are closed enumerations validated at configuration load
time. An unknown policy value is rejected before any reconciliation pass
runs instead of being discovered in the middle of a rollout.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)


class OnCreateFailureAction(str, Enum):
    """What to do with a StatefulSet that never converged after create."""

    ABORT = "abort"
    DELETE = "delete"


class OnUpdateFailureAction(str, Enum):
    """What to do with a StatefulSet that never converged after update."""

    ABORT = "abort"
    ROLLBACK = "rollback"


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_CONVERGENCE_TIMEOUT_SECONDS = 300
DEFAULT_CONVERGENCE_POLL_INTERVAL_SECONDS = 15
MAX_CONVERGENCE_TIMEOUT_SECONDS = 3600

DEFAULT_RECONCILE_INTERVAL_SECONDS = 60
MIN_RECONCILE_INTERVAL_SECONDS = 5
MAX_RECONCILE_INTERVAL_SECONDS = 3600

DEFAULT_MAX_CONCURRENT_HOSTS = 1
MAX_CONCURRENT_HOSTS = 32

MAX_POLICY_FILE_SIZE_BYTES = 64 * 1024
MAX_MANIFEST_FILE_SIZE_BYTES = 1024 * 1024

DEFAULT_NAMESPACE = "default"


def _parse_create_action(value: str) -> OnCreateFailureAction:
    try:
        return OnCreateFailureAction(value.lower())
    except ValueError as e:
        valid = [a.value for a in OnCreateFailureAction]
        raise ConfigurationError(
            f"ON_CREATE_FAILURE_ACTION must be one of {valid}: {value}"
        ) from e


def _parse_update_action(value: str) -> OnUpdateFailureAction:
    try:
        return OnUpdateFailureAction(value.lower())
    except ValueError as e:
        valid = [a.value for a in OnUpdateFailureAction]
        raise ConfigurationError(
            f"ON_UPDATE_FAILURE_ACTION must be one of {valid}: {value}"
        ) from e


@dataclass(frozen=True)
class FailurePolicyConfig:
    """Failure handling for StatefulSet rollouts.

    Read-only for the duration of a reconciliation pass. A new instance is
    loaded between passes when the policy source changes.

    continue_on_failure decides whether the pass proceeds to the next host
    after a remediation (delete or rollback) was applied. The default keeps
    the historical behavior of stopping the pass.
    """

    on_create_failure: OnCreateFailureAction = OnCreateFailureAction.DELETE
    on_update_failure: OnUpdateFailureAction = OnUpdateFailureAction.ROLLBACK
    convergence_timeout_seconds: float = DEFAULT_CONVERGENCE_TIMEOUT_SECONDS
    convergence_poll_interval_seconds: float = DEFAULT_CONVERGENCE_POLL_INTERVAL_SECONDS
    continue_on_failure: bool = False

    def __post_init__(self) -> None:
        """Validate policy values at the boundary (fail-fast)."""
        errors: list[str] = []

        if not isinstance(self.on_create_failure, OnCreateFailureAction):
            errors.append(f"Unknown create failure action: {self.on_create_failure!r}")
        if not isinstance(self.on_update_failure, OnUpdateFailureAction):
            errors.append(f"Unknown update failure action: {self.on_update_failure!r}")

        if self.convergence_timeout_seconds <= 0:
            errors.append("CONVERGENCE_TIMEOUT must be positive")
        elif self.convergence_timeout_seconds > MAX_CONVERGENCE_TIMEOUT_SECONDS:
            errors.append(
                f"CONVERGENCE_TIMEOUT cannot exceed {MAX_CONVERGENCE_TIMEOUT_SECONDS} seconds"
            )

        if self.convergence_poll_interval_seconds <= 0:
            errors.append("CONVERGENCE_POLL_INTERVAL must be positive")
        elif self.convergence_poll_interval_seconds > self.convergence_timeout_seconds:
            errors.append("CONVERGENCE_POLL_INTERVAL cannot exceed CONVERGENCE_TIMEOUT")

        if errors:
            error_msg = "Failure policy validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls) -> FailurePolicyConfig:
        """Load failure policy from environment variables.

        Environment Variables:
            ON_CREATE_FAILURE_ACTION: abort or delete (default: delete)
            ON_UPDATE_FAILURE_ACTION: abort or rollback (default: rollback)
            CONVERGENCE_TIMEOUT: Seconds to wait for a rollout (default: 300)
            CONVERGENCE_POLL_INTERVAL: Seconds between status polls (default: 15)
            CONTINUE_ON_FAILURE: If "true", keep going after remediation (default: false)
        """
        return cls(
            on_create_failure=_parse_create_action(
                os.environ.get("ON_CREATE_FAILURE_ACTION", OnCreateFailureAction.DELETE.value)
            ),
            on_update_failure=_parse_update_action(
                os.environ.get("ON_UPDATE_FAILURE_ACTION", OnUpdateFailureAction.ROLLBACK.value)
            ),
            convergence_timeout_seconds=_get_int(
                "CONVERGENCE_TIMEOUT", DEFAULT_CONVERGENCE_TIMEOUT_SECONDS
            ),
            convergence_poll_interval_seconds=_get_int(
                "CONVERGENCE_POLL_INTERVAL", DEFAULT_CONVERGENCE_POLL_INTERVAL_SECONDS
            ),
            continue_on_failure=_get_bool("CONTINUE_ON_FAILURE", False),
        )


class PolicyFileModel(BaseModel):
    """On-disk failure policy document.

    Keys follow the operator configuration file naming.
    """

    model_config = {"extra": "ignore", "populate_by_name": True}

    on_create_failure: OnCreateFailureAction = Field(
        OnCreateFailureAction.DELETE, alias="onStatefulSetCreateFailureAction"
    )
    on_update_failure: OnUpdateFailureAction = Field(
        OnUpdateFailureAction.ROLLBACK, alias="onStatefulSetUpdateFailureAction"
    )
    convergence_timeout_seconds: float = Field(
        DEFAULT_CONVERGENCE_TIMEOUT_SECONDS, alias="statefulSetUpdateTimeout"
    )
    convergence_poll_interval_seconds: float = Field(
        DEFAULT_CONVERGENCE_POLL_INTERVAL_SECONDS, alias="statefulSetUpdatePollPeriod"
    )
    continue_on_failure: bool = Field(False, alias="continueOnFailure")

    def to_policy(self) -> FailurePolicyConfig:
        return FailurePolicyConfig(
            on_create_failure=self.on_create_failure,
            on_update_failure=self.on_update_failure,
            convergence_timeout_seconds=self.convergence_timeout_seconds,
            convergence_poll_interval_seconds=self.convergence_poll_interval_seconds,
            continue_on_failure=self.continue_on_failure,
        )


def load_policy_file(path: Path) -> FailurePolicyConfig:
    """Load and validate a failure policy from YAML.

    Args:
        path: Policy file path.

    Returns:
        Validated failure policy.

    Raises:
        ConfigurationError: If the file is missing, too large, or invalid.
    """
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise ConfigurationError(f"Cannot read policy file {path}: {e}") from e

    if file_size > MAX_POLICY_FILE_SIZE_BYTES:
        raise ConfigurationError(
            f"Policy file {path} exceeds maximum size of {MAX_POLICY_FILE_SIZE_BYTES} bytes"
        )

    try:
        data: Any = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in policy file {path}: {e}") from e

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"Policy file {path} must contain a mapping")

    try:
        return PolicyFileModel.model_validate(data).to_policy()
    except ValidationError as e:
        raise ConfigurationError(f"Policy file {path} failed validation: {e}") from e


class PolicySource:
    """Supplies the failure policy before each reconciliation pass.

    Without a policy file the base policy is returned unchanged. With a file,
    it is re-read only when its modification time changes. A broken reload
    keeps serving the last good policy.
    """

    def __init__(self, base: FailurePolicyConfig, policy_file: Path | None = None) -> None:
        self._current = base
        self._policy_file = policy_file
        self._loaded_mtime: float | None = None

    @property
    def current(self) -> FailurePolicyConfig:
        """Get the most recently loaded policy."""
        return self._current

    def load(self) -> FailurePolicyConfig:
        """Return the policy to use for the next pass."""
        if self._policy_file is None:
            return self._current

        try:
            mtime = self._policy_file.stat().st_mtime
        except OSError as e:
            logger.warning(
                "Policy file unavailable, keeping current policy",
                extra={"policy_file": str(self._policy_file), "error": str(e)},
            )
            return self._current

        if self._loaded_mtime is not None and mtime == self._loaded_mtime:
            return self._current

        try:
            policy = load_policy_file(self._policy_file)
        except ConfigurationError as e:
            logger.error(
                "Policy reload failed, keeping current policy",
                extra={"policy_file": str(self._policy_file), "error": str(e)},
            )
            return self._current

        self._current = policy
        self._loaded_mtime = mtime
        logger.info(
            "Failure policy loaded",
            extra={
                "policy_file": str(self._policy_file),
                "on_create_failure": policy.on_create_failure.value,
                "on_update_failure": policy.on_update_failure.value,
                "continue_on_failure": policy.continue_on_failure,
            },
        )
        return policy


@dataclass(frozen=True)
class Config:
    """Operator configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing at runtime.
    """

    cluster_name: str
    namespace: str = DEFAULT_NAMESPACE
    manifests_dir: Path = field(default_factory=lambda: Path("/manifests"))
    reconcile_interval_seconds: int = DEFAULT_RECONCILE_INTERVAL_SECONDS
    max_concurrent_hosts: int = DEFAULT_MAX_CONCURRENT_HOSTS
    policy: FailurePolicyConfig = field(default_factory=FailurePolicyConfig)
    policy_file: Path | None = None

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not self.cluster_name:
            errors.append("CLUSTER_NAME is required")
        if not self.namespace:
            errors.append("WATCH_NAMESPACE cannot be empty")

        if not (
            MIN_RECONCILE_INTERVAL_SECONDS
            <= self.reconcile_interval_seconds
            <= MAX_RECONCILE_INTERVAL_SECONDS
        ):
            errors.append(
                f"RECONCILE_INTERVAL must be between {MIN_RECONCILE_INTERVAL_SECONDS} "
                f"and {MAX_RECONCILE_INTERVAL_SECONDS} seconds"
            )

        if not (1 <= self.max_concurrent_hosts <= MAX_CONCURRENT_HOSTS):
            errors.append(f"MAX_CONCURRENT_HOSTS must be between 1 and {MAX_CONCURRENT_HOSTS}")

        if not self.manifests_dir.exists():
            errors.append(f"Manifests directory does not exist: {self.manifests_dir}")

        if self.policy_file is not None and not self.policy_file.exists():
            errors.append(f"Failure policy file does not exist: {self.policy_file}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            CLUSTER_NAME: ClickHouseInstallation whose hosts are reconciled
            WATCH_NAMESPACE: Namespace of the installation (default: default)
            MANIFESTS_DIR: Rendered desired-state manifests (default: /manifests)
            RECONCILE_INTERVAL: Seconds between passes (default: 60)
            MAX_CONCURRENT_HOSTS: Hosts reconciled in parallel (default: 1)
            FAILURE_POLICY_FILE: Optional YAML failure policy, reloaded between passes

        Failure policy variables are documented on FailurePolicyConfig.from_env().
        If FAILURE_POLICY_FILE is set, the file takes precedence.
        """
        policy_file_env = os.environ.get("FAILURE_POLICY_FILE")
        policy_file = Path(policy_file_env) if policy_file_env else None

        policy = FailurePolicyConfig.from_env()
        if policy_file is not None and policy_file.exists():
            policy = load_policy_file(policy_file)

        return cls(
            cluster_name=os.environ.get("CLUSTER_NAME", ""),
            namespace=os.environ.get("WATCH_NAMESPACE", DEFAULT_NAMESPACE),
            manifests_dir=Path(os.environ.get("MANIFESTS_DIR", "/manifests")),
            reconcile_interval_seconds=_get_int(
                "RECONCILE_INTERVAL", DEFAULT_RECONCILE_INTERVAL_SECONDS
            ),
            max_concurrent_hosts=_get_int("MAX_CONCURRENT_HOSTS", DEFAULT_MAX_CONCURRENT_HOSTS),
            policy=policy,
            policy_file=policy_file,
        )


def _get_int(key: str, default: int) -> int:
    value = os.environ.get(key)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError as e:
        raise ConfigurationError(f"{key} must be an integer: {value}") from e


def _get_bool(key: str, default: bool) -> bool:
    value = os.environ.get(key, "").lower()
    if not value:
        return default
    return value in ("true", "1", "yes")
