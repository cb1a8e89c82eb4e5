"""Daily call quotas per task and per model."""
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Dict, Any

from storage.database import Database
from budget.models import BudgetDecision
from budget.task_config import TaskConfigResolver
from utils.errors import BudgetExceededError
from utils.logger import setup_logger
import config

logger = setup_logger(__name__)


@dataclass
class BypassState:
    """Process-wide cache of the usage-limit override."""
    cached_value: Optional[bool] = None
    has_logged_once: bool = False

    def reset(self) -> None:
        self.cached_value = None
        self.has_logged_once = False


bypass_state = BypassState()


def today() -> str:
    return datetime.now(timezone.utc).date().isoformat()


class BudgetGovernor:
    """Gates expensive calls against daily task and model quotas.

    ``check_budget`` must allow an operation before it runs and
    ``charge_budget`` records it afterwards. Counters are keyed by UTC date,
    so there is no rollover job.
    """

    def __init__(
        self,
        db: Database,
        resolver: Optional[TaskConfigResolver] = None,
        state: BypassState = bypass_state
    ):
        self.db = db
        self.resolver = resolver or TaskConfigResolver(db)
        self.state = state

    def is_global_limit_disabled(self) -> bool:
        if self.state.cached_value is None:
            value = self.db.get_setting(config.DISABLE_USAGE_LIMITS_KEY)
            self.state.cached_value = (value or "").lower() == "true"
        return self.state.cached_value

    def set_global_limit_disabled(self, disabled: bool) -> None:
        """Admin write; refreshes the in-memory cache."""
        self.db.set_setting(config.DISABLE_USAGE_LIMITS_KEY, "true" if disabled else "false")
        self.state.cached_value = disabled
        logger.info(f"Usage limits {'disabled' if disabled else 'enabled'} globally")

    def check_budget(self, task: str, model: Optional[str] = None, cost: int = 1) -> BudgetDecision:
        """Decide whether ``cost`` more calls of ``task`` fit today's quotas.

        Args:
            task: Task name, e.g. "sceneExtraction"
            model: Model string; defaults to the task's configured model
            cost: Number of calls about to be made

        Returns:
            BudgetDecision with a reason when denied
        """
        if self.is_global_limit_disabled():
            if not self.state.has_logged_once:
                logger.warning("Usage limits are disabled globally; skipping budget checks")
                self.state.has_logged_once = True
            return BudgetDecision(allowed=True)

        date = today()
        task_config = self.resolver.resolve_task(task)
        model = model or task_config.model

        if task_config.budget_enabled:
            used = self.db.get_task_requests(date, task)
            if used + cost > task_config.daily_limit:
                return BudgetDecision(
                    allowed=False,
                    reason=f"Daily budget exceeded for task '{task}' ({used}/{task_config.daily_limit})"
                )

        model_config = self.resolver.resolve_model(model)
        if model_config.budget_enabled:
            used = self.db.get_model_requests(date, model)
            if used + cost > model_config.daily_limit:
                return BudgetDecision(
                    allowed=False,
                    reason=f"Daily budget exceeded for model '{model}' ({used}/{model_config.daily_limit})"
                )

        return BudgetDecision(allowed=True)

    def require_budget(self, task: str, model: Optional[str] = None, cost: int = 1) -> None:
        """Like check_budget, but raises when denied.

        Raises:
            BudgetExceededError: If either quota would be exceeded
        """
        decision = self.check_budget(task, model, cost)
        if not decision.allowed:
            raise BudgetExceededError(decision.reason)

    def charge_budget(
        self,
        task: str,
        model: Optional[str] = None,
        provider: Optional[str] = None,
        cost: int = 1,
        tokens_in: int = 0,
        tokens_out: int = 0
    ) -> None:
        """Record usage against both the task and the model counters."""
        task_config = self.resolver.resolve_task(task)
        model = model or task_config.model
        provider = provider or task_config.provider
        date = today()

        self.db.increment_task_usage(date, task, cost, tokens_in, tokens_out)
        self.db.increment_model_usage(date, provider, model, cost, tokens_in, tokens_out)

    def preflight_ingestion(self, chapter_count: int) -> BudgetDecision:
        """Check that one scene-extraction call per chapter fits the quota."""
        decision = self.check_budget("sceneExtraction", cost=chapter_count)
        if decision.allowed:
            return decision
        return BudgetDecision(
            allowed=False,
            reason=(
                f"Preflight Check Failed: Ingestion requires ~{chapter_count} calls for scene "
                f"extraction. {decision.reason}. Please increase budget or enable "
                f"'Disable Usage Limits'."
            )
        )

    def usage_summary(self, date: Optional[str] = None) -> Dict[str, Any]:
        return self.db.get_usage_for_date(date or today())
