"""
Policy resolution for duplicate checks.

Resolves the time window, similarity threshold, duplicate cap and enabled
flag for a (category, priority) pair. A category override wins when it
exists and is enabled; otherwise the priority tier default applies. The
global ``enabled`` switch turns every resolved policy off.

Updates are validated as a whole and swapped in atomically: a rejected
update leaves the previous configuration untouched.
"""

from dataclasses import dataclass
from typing import Any, Mapping, Optional, Tuple

import structlog
from pydantic import ValidationError

from ..config import DedupPolicy, GlobalDefaults, PolicyConfig, deep_merge, format_validation_errors
from ..protocols import PRIORITY_TIERS, PolicyTier, Priority

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ConfigUpdateResult:
    """Outcome of a configuration update."""

    applied: bool
    errors: Tuple[str, ...] = ()

    def __bool__(self) -> bool:
        return self.applied


class PolicyRegistry:
    """Holds the active PolicyConfig and answers policy lookups."""

    def __init__(self, config: Optional[PolicyConfig] = None) -> None:
        self._config = config or PolicyConfig()

    @property
    def config(self) -> PolicyConfig:
        return self._config

    def resolve(self, category: Optional[str], priority: Priority | str = Priority.NORMAL) -> DedupPolicy:
        """Return the policy governing a check; unknown priorities use the toast tier."""
        config = self._config
        policy = self.get_category_policy(category) if category else None
        if policy is None or not policy.enabled:
            policy = config.tiers[PRIORITY_TIERS[Priority.parse(priority)]]

        if not config.global_defaults.enabled and policy.enabled:
            return policy.model_copy(update={"enabled": False})
        return policy

    def get_category_policy(self, category: str) -> Optional[DedupPolicy]:
        return self._config.categories.get(category.strip().lower())

    def get_tier_policy(self, tier: PolicyTier | str) -> DedupPolicy:
        return self._config.tiers[PolicyTier(tier)]

    def get_config(self) -> PolicyConfig:
        return self._config

    def update_config(self, partial: Mapping[str, Any]) -> ConfigUpdateResult:
        """
        Deep-merge ``partial`` into the current configuration.

        The merged document is validated as a whole; on any error nothing
        is applied and the errors are returned.
        """
        merged = deep_merge(self._config.model_dump(mode="json"), partial)
        try:
            candidate = PolicyConfig.model_validate(merged)
        except ValidationError as e:
            errors = tuple(format_validation_errors(e))
            logger.warning("Rejected policy update", errors=errors)
            return ConfigUpdateResult(applied=False, errors=errors)

        self._config = candidate
        logger.info(
            "Policy configuration updated",
            categories=sorted(candidate.categories),
            enabled=candidate.global_defaults.enabled,
        )
        return ConfigUpdateResult(applied=True)

    def update_policy(
        self,
        policy: DedupPolicy | GlobalDefaults | Mapping[str, Any],
        category: Optional[str] = None,
    ) -> ConfigUpdateResult:
        """
        Replace one category override, or the global defaults when no category is given.

        Unlike update_config this replaces the named section outright rather
        than merging field by field.
        """
        if category is None and isinstance(policy, DedupPolicy):
            payload = {
                "enabled": policy.enabled,
                "default_time_window": policy.time_window,
                "default_similarity_threshold": policy.similarity_threshold,
                "default_max_duplicates": policy.max_duplicates,
            }
        elif isinstance(policy, (DedupPolicy, GlobalDefaults)):
            payload = policy.model_dump(mode="json")
        else:
            payload = dict(policy)

        if category is None:
            merged = {**self._config.model_dump(mode="json"), "global_defaults": payload}
        else:
            current = self._config.model_dump(mode="json")
            categories = {**current["categories"], category: payload}
            merged = {**current, "categories": categories}

        try:
            candidate = PolicyConfig.model_validate(merged)
        except ValidationError as e:
            errors = tuple(format_validation_errors(e))
            logger.warning("Rejected policy replacement", category=category, errors=errors)
            return ConfigUpdateResult(applied=False, errors=errors)

        self._config = candidate
        logger.info("Policy replaced", category=category or "<global>")
        return ConfigUpdateResult(applied=True)

    def replace_config(self, config: PolicyConfig) -> None:
        """Swap in an already-validated configuration."""
        self._config = config

    def reset_to_defaults(self) -> None:
        self._config = PolicyConfig()
        logger.info("Policy configuration reset to defaults")

    def reset_category(self, category: str) -> ConfigUpdateResult:
        """Set a category's override to the current global defaults."""
        return self.update_policy(self._config.global_defaults.as_policy(), category=category)
