"""Per-task and per-model provider configuration."""
from storage.database import Database
from budget.models import TaskConfig, ModelConfig
from utils.logger import setup_logger
import config

logger = setup_logger(__name__)


class TaskConfigResolver:
    """Resolves task and model settings from the database, then defaults."""

    def __init__(self, db: Database):
        self.db = db

    def resolve_task(self, task: str) -> TaskConfig:
        row = self.db.get_task_config(task)
        if row:
            return TaskConfig(
                task=task,
                provider=row['provider'],
                model=row['model'],
                budget_enabled=bool(row['budget_enabled']),
                daily_limit=row['daily_limit']
            )

        defaults = config.TASK_DEFAULTS.get(task)
        if defaults is None:
            logger.warning(f"No configuration for task '{task}', using the default LLM")
            defaults = {"provider": config.LLM_PROVIDER, "model": config.ANTHROPIC_MODEL}

        return TaskConfig(
            task=task,
            provider=defaults['provider'],
            model=defaults['model'],
            budget_enabled=True,
            daily_limit=config.DEFAULT_TASK_DAILY_LIMIT
        )

    def resolve_model(self, model: str) -> ModelConfig:
        row = self.db.get_model_config(model)
        if row:
            return ModelConfig(
                model=model,
                budget_enabled=bool(row['budget_enabled']),
                daily_limit=row['daily_limit']
            )
        return ModelConfig(model=model, budget_enabled=False, daily_limit=config.DEFAULT_MODEL_DAILY_LIMIT)

    def set_task(
        self,
        task: str,
        provider: str,
        model: str,
        budget_enabled: bool = True,
        daily_limit: int = config.DEFAULT_TASK_DAILY_LIMIT
    ) -> TaskConfig:
        self.db.upsert_task_config(task, provider, model, budget_enabled, daily_limit)
        logger.info(f"Task '{task}' -> {provider}/{model} (limit {daily_limit}, enabled={budget_enabled})")
        return self.resolve_task(task)

    def set_model(self, model: str, budget_enabled: bool, daily_limit: int) -> ModelConfig:
        self.db.upsert_model_config(model, budget_enabled, daily_limit)
        logger.info(f"Model '{model}' limit {daily_limit} (enabled={budget_enabled})")
        return self.resolve_model(model)
