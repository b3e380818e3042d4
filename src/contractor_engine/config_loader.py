"""Load grading, escalation and notification policies from the record store."""

from __future__ import annotations

import copy
import logging
from typing import Any, Dict

from contractor_engine.constants import (
    DEFAULT_ESCALATION_POLICY,
    DEFAULT_GRADE_POLICY,
    DEFAULT_NOTIFICATION_POLICY,
    ENGINE_CONFIG_COLLECTION,
)
from contractor_engine.exceptions import InitializationError
from contractor_engine.storage.record_store import RecordStore

logger = logging.getLogger(__name__)


class ConfigLoader:
    """Read policy documents from the engine-config collection.

    An absent document means "use the built-in defaults". A document that is
    present must be complete; partial documents fail loudly so a half-edited
    policy never silently mixes with defaults.
    """

    def __init__(self, store: RecordStore):
        self.store = store

    def _get_config(self, key: str) -> Dict[str, Any]:
        record = self.store.get(ENGINE_CONFIG_COLLECTION, key)
        if record is None:
            raise InitializationError(f"Configuration '{key}' not found")
        if not isinstance(record.data, dict):
            raise InitializationError(f"Configuration '{key}' is not a document")
        return record.data

    def _get_or_default(self, key: str, default: Dict[str, Any]) -> Dict[str, Any]:
        try:
            return self._get_config(key)
        except InitializationError:
            logger.debug("%s config not found, using defaults", key)
            return copy.deepcopy(default)

    def get_grade_policy(self) -> Dict[str, Any]:
        """
        Get the grade classification policy.

        Returns the stored "grade-policy" document, or the default threshold
        policy when none is stored.
        """
        config = self._get_or_default("grade-policy", DEFAULT_GRADE_POLICY)

        policy = config.get("policy")
        if policy not in ("threshold", "weighted"):
            raise InitializationError(
                f"grade-policy.policy must be 'threshold' or 'weighted', got {policy!r}"
            )

        required = ["tiers"] if policy == "threshold" else ["weights", "bands"]
        missing = [k for k in required if k not in config]
        if missing:
            raise InitializationError(
                f"grade-policy missing required sections: {missing}. "
                "Update the grade-policy config record to include all required fields."
            )

        if policy == "threshold":
            tier_required = [
                "tier",
                "minJobs",
                "minRating",
                "minQuality",
                "maxResponseMinutes",
                "minOnTimeRate",
                "minSatisfactionRate",
            ]
            for index, tier in enumerate(config["tiers"]):
                tier_missing = [k for k in tier_required if k not in tier]
                if tier_missing:
                    raise InitializationError(
                        f"grade-policy.tiers[{index}] missing required keys: {tier_missing}"
                    )

        return config

    def get_escalation_policy(self) -> Dict[str, Any]:
        """
        Get cadence defaults for the fee escalation scheduler.

        Each cadence section needs intervalSeconds and stepSize.
        """
        config = self._get_or_default("escalation-policy", DEFAULT_ESCALATION_POLICY)

        for cadence in ("short", "long"):
            section = config.get(cadence)
            if section is None:
                raise InitializationError(
                    f"escalation-policy missing required section: {cadence}"
                )
            missing = [k for k in ("intervalSeconds", "stepSize") if k not in section]
            if missing:
                raise InitializationError(
                    f"escalation-policy.{cadence} missing required keys: {missing}"
                )

        return config

    def get_notification_policy(self) -> Dict[str, Any]:
        """
        Get delivery retry settings.

        Missing keys fall back to defaults; delivery tuning is optional.
        """
        config = self._get_or_default("notification-policy", DEFAULT_NOTIFICATION_POLICY)
        return {**DEFAULT_NOTIFICATION_POLICY, **config}
