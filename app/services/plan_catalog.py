import json
import logging
import os
from typing import Dict, List, Optional

from app.core.config import settings
from app.schemas.billing import PlanCatalogFile, PlanDefinition, PlanResponse

logger = logging.getLogger(__name__)


class PlanCatalog:
    """Read-only table of plans keyed by plan_type.

    Lookups never raise: unknown keys resolve to the catalog's default plan
    (definition) or to the lowest rank (priority), so new or legacy plan keys
    coming back from Stripe cannot break reconciliation or upgrade checks.
    """

    def __init__(self, plans: List[PlanDefinition], default_plan: str):
        self._plans: Dict[str, PlanDefinition] = {plan.key: plan for plan in plans}
        if default_plan not in self._plans:
            raise ValueError(f"Default plan '{default_plan}' is not defined in the plan catalog")
        self.default_plan = default_plan

    @classmethod
    def from_file(cls, path: str) -> "PlanCatalog":
        with open(path, "r", encoding="utf-8") as fh:
            data = PlanCatalogFile(**json.load(fh))
        return cls(data.plans, data.default_plan)

    def is_known(self, key: Optional[str]) -> bool:
        return bool(key) and key in self._plans

    def definition_of(self, key: Optional[str]) -> PlanDefinition:
        if key and key in self._plans:
            return self._plans[key]
        return self._plans[self.default_plan]

    def priority_of(self, key: Optional[str]) -> int:
        if not key or key not in self._plans:
            return 0
        return self._plans[key].priority

    def credits_for(self, key: Optional[str]) -> int:
        return self.definition_of(key).credits

    def is_downgrade(self, current_key: Optional[str], target_key: Optional[str]) -> bool:
        """True when target ranks below current; one-time refill packs are never a downgrade"""
        if self.is_known(target_key) and self._plans[target_key].one_time:
            return False
        return self.priority_of(target_key) < self.priority_of(current_key)

    def external_price_id(self, key: Optional[str]) -> Optional[str]:
        """Stripe price id for a plan, or None when the plan or its env var is not configured"""
        if not self.is_known(key):
            return None
        env_name = self._plans[key].price_env
        if not env_name:
            return None
        return os.getenv(env_name) or None

    def plan_key_for_price(self, price_id: Optional[str]) -> Optional[str]:
        if not price_id:
            return None
        for plan in self._plans.values():
            if self.external_price_id(plan.key) == price_id:
                return plan.key
        return None

    def resolve_plan_key(self, price_id: Optional[str], hint: Optional[str] = None) -> str:
        """Price id -> plan key, falling back to a known hint, then the default plan"""
        key = self.plan_key_for_price(price_id)
        if key:
            return key
        if self.is_known(hint):
            return hint
        logger.warning(f"Unknown Stripe price id {price_id!r}, using default plan '{self.default_plan}'")
        return self.default_plan

    def plans(self, include_legacy: bool = False) -> List[PlanDefinition]:
        """Purchasable plans, cheapest tier first"""
        return sorted(
            (
                plan for plan in self._plans.values()
                if plan.price_env and (include_legacy or not plan.legacy)
            ),
            key=lambda plan: (plan.priority, plan.price),
        )

    def plan_responses(self, include_legacy: bool = False) -> List[PlanResponse]:
        return [
            PlanResponse(
                key=plan.key,
                name=plan.name,
                price=plan.price,
                credits=plan.credits,
                interval=plan.interval,
                one_time=plan.one_time,
                features=list(plan.features),
                configured=self.external_price_id(plan.key) is not None,
            )
            for plan in self.plans(include_legacy=include_legacy)
        ]


# Create singleton instance
plan_catalog = PlanCatalog.from_file(settings.plan_catalog_path)
