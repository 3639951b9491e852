"""Token/cost estimation and per-scope daily budget enforcement.

Token counts are a character heuristic (about four characters per
token).  They are good enough to budget with and must not be used for
billing.

Spend is read from the usage records held by the storage collaborator on
every check, never cached, so a budget reflects all records written so
far today (UTC).

Design notes
------------
* Soft mode (default): the check and the later spend are not atomic, so
  concurrent requests for one scope may overrun the budget by the cost
  of the requests in flight.
* Strict mode: ``scope_guard`` hands out a per-scope ``asyncio.Lock``
  that the orchestrator holds from the budget check until the usage is
  recorded, serializing spend within a scope.
"""

import asyncio
import json
import threading
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from math import ceil, floor

from uem_gateway.models.context import ScopeKey
from uem_gateway.storage.base import Storage


@dataclass(frozen=True)
class ModelPrice:
    """USD per 1K tokens."""

    input_per_1k: float
    output_per_1k: float


MODEL_PRICING: dict[str, ModelPrice] = {
    "gpt-4o": ModelPrice(input_per_1k=0.005, output_per_1k=0.015),
    "gpt-4o-mini": ModelPrice(input_per_1k=0.00015, output_per_1k=0.0006),
    "gpt-4": ModelPrice(input_per_1k=0.03, output_per_1k=0.06),
    "gpt-3.5-turbo": ModelPrice(input_per_1k=0.002, output_per_1k=0.002),
}
FALLBACK_PRICING_MODEL = "gpt-4o"

# assumed share of input tokens when only a total is known
INPUT_TOKEN_SHARE = 0.7


class BudgetExceededError(Exception):
    """Raised when a scope has already spent its daily budget."""

    def __init__(self, scope: ScopeKey, spent: float, budget: float):
        self.scope = scope
        self.spent = spent
        self.budget = budget
        super().__init__(
            f"Daily AI budget exceeded for {scope.as_key()}: "
            f"${spent:.4f} spent of ${budget:.2f}"
        )


def split_tokens(total_tokens: int) -> tuple[int, int]:
    """Split a total into (input, output) using the 70/30 assumption."""
    return floor(total_tokens * INPUT_TOKEN_SHARE), floor(total_tokens * (1 - INPUT_TOKEN_SHARE))


class CostAccountant:
    def __init__(
        self,
        storage: Storage,
        default_budget: float = 1000.0,
        tenant_budgets: dict[str, float] | None = None,
        domain_budgets: dict[str, float] | None = None,
        strict: bool = False,
    ) -> None:
        self._storage = storage
        self.default_budget = default_budget
        self._tenant_budgets = dict(tenant_budgets) if tenant_budgets else {}
        self._domain_budgets = dict(domain_budgets) if domain_budgets else {}
        self._strict = strict
        self._scope_locks: dict[str, asyncio.Lock] = {}
        self._locks_guard = threading.Lock()

    @property
    def strict(self) -> bool:
        return self._strict

    @staticmethod
    def estimate_tokens(payload: object) -> int:
        serialized = (
            payload
            if isinstance(payload, str)
            else json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
        )
        return ceil(len(serialized) / 4)

    @staticmethod
    def price_for(model: str) -> ModelPrice:
        return MODEL_PRICING.get(model, MODEL_PRICING[FALLBACK_PRICING_MODEL])

    def estimate_cost(self, model: str, tokens: int) -> float:
        """Pre-dispatch estimate for a token total of unknown split."""
        input_tokens, output_tokens = split_tokens(tokens)
        return self.usage_cost(model, input_tokens, output_tokens)

    def usage_cost(self, model: str, tokens_in: int, tokens_out: int) -> float:
        """Cost of an actual input/output split."""
        price = self.price_for(model)
        cost = (tokens_in * price.input_per_1k + tokens_out * price.output_per_1k) / 1000
        return round(cost, 8)

    def daily_budget(self, scope: ScopeKey) -> float:
        if scope.tenant_id and scope.tenant_id in self._tenant_budgets:
            return self._tenant_budgets[scope.tenant_id]
        if scope.domain_id and scope.domain_id in self._domain_budgets:
            return self._domain_budgets[scope.domain_id]
        return self.default_budget

    async def spent_today(self, scope: ScopeKey) -> float:
        return await self._storage.sum_cost_for_scope_today(scope)

    async def ensure_within_budget(self, scope: ScopeKey) -> float:
        """Raise ``BudgetExceededError`` once today's spend reaches the budget.

        Returns the amount spent so far today.
        """
        budget = self.daily_budget(scope)
        spent = await self.spent_today(scope)
        if spent >= budget:
            raise BudgetExceededError(scope=scope, spent=spent, budget=budget)
        return spent

    async def summary(self, scope: ScopeKey) -> dict[str, object]:
        budget = self.daily_budget(scope)
        spent = await self.spent_today(scope)
        return {
            "scope": scope.as_key(),
            "daily_budget": budget,
            "spent_today": spent,
            "remaining": round(max(0.0, budget - spent), 8),
            "utilization_pct": round(spent / budget * 100, 2) if budget > 0 else 0.0,
            "strict_enforcement": self._strict,
        }

    @asynccontextmanager
    async def scope_guard(self, scope: ScopeKey) -> AsyncIterator[None]:
        if not self._strict:
            yield
            return
        key = scope.as_key()
        with self._locks_guard:
            lock = self._scope_locks.setdefault(key, asyncio.Lock())
        async with lock:
            yield
