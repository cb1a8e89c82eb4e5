"""Shared call-and-degrade logic for attribute extraction pipelines."""
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from budget.governor import BudgetGovernor
from budget.task_config import TaskConfigResolver
from extraction.models import AnalysisContext, AttributeValue
from extraction.normalize import (
    failed_attributes,
    provider_failure_kind,
    unknown_attributes,
    unwrap_json,
)
from extraction.templates import AnalysisTemplate
from llm.completion import LLMClient, parse_json
from storage.models import Fragment
from utils.errors import LLMError, LLMResponseError
from utils.logger import setup_logger

logger = setup_logger(__name__)

ANALYSIS_TASK = "visualAnalysis"


class AttributePipeline(ABC):
    """One LLM call that turns a context into an attribute map.

    Subclasses supply the prompt and the parsing of the unwrapped JSON
    object. Budget is checked by the caller and charged here, after the
    call. A malformed reply degrades to an all-unknown map and a provider
    failure to "Extraction failed" placeholders; neither raises.
    """

    name = "base"

    def __init__(
        self,
        llm: LLMClient,
        governor: BudgetGovernor,
        resolver: Optional[TaskConfigResolver] = None
    ):
        self.llm = llm
        self.governor = governor
        self.resolver = resolver or governor.resolver

    def extract(
        self,
        entity_name: str,
        template: AnalysisTemplate,
        context: AnalysisContext
    ) -> Dict[str, AttributeValue]:
        task_config = self.resolver.resolve_task(ANALYSIS_TASK)
        prompt = self.build_prompt(entity_name, template, context)

        try:
            completion = self.llm.complete(prompt, task_config.model, json_mode=True)
        except LLMResponseError as e:
            self.governor.charge_budget(ANALYSIS_TASK, task_config.model, task_config.provider, 1)
            logger.error(f"{self.name} extraction for '{entity_name}' returned no JSON: {e}")
            return unknown_attributes(template.attributes)
        except LLMError as e:
            self.governor.charge_budget(ANALYSIS_TASK, task_config.model, task_config.provider, 1)
            logger.error(f"{self.name} extraction for '{entity_name}' failed: {e}")
            return failed_attributes(template.attributes, provider_failure_kind(e))

        self.governor.charge_budget(
            ANALYSIS_TASK, task_config.model, task_config.provider, 1,
            completion.input_tokens, completion.output_tokens
        )

        try:
            data = unwrap_json(parse_json(completion), entity_name, template.attributes)
        except LLMResponseError as e:
            logger.error(f"Unparsable attribute JSON for '{entity_name}': {e}")
            return unknown_attributes(template.attributes)

        if not data:
            logger.warning(f"No attribute object found in reply for '{entity_name}'")
            return unknown_attributes(template.attributes)

        try:
            attributes = self.parse_attributes(data, entity_name, template, context)
        except (TypeError, ValueError, AttributeError):
            logger.exception(f"Failed to normalize attributes for '{entity_name}'")
            return failed_attributes(template.attributes, "Internal Processing Error")

        populated = sum(1 for v in attributes.values() if v.value is not None)
        logger.info(f"{self.name}: {populated}/{len(template.attributes)} attributes populated for '{entity_name}'")
        return attributes

    @staticmethod
    def format_fragment(index: int, fragment: Fragment, context: AnalysisContext) -> str:
        location = context.title_for(fragment)
        if fragment.global_scene_index is not None:
            location += f", Scene {fragment.global_scene_index}"
        return f'[Fragment {index}] ({location}): "{fragment.text}"'

    @abstractmethod
    def build_prompt(self, entity_name: str, template: AnalysisTemplate, context: AnalysisContext) -> str:
        """Render the extraction prompt for one entity."""
        pass

    @abstractmethod
    def parse_attributes(
        self,
        data: Dict[str, Any],
        entity_name: str,
        template: AnalysisTemplate,
        context: AnalysisContext
    ) -> Dict[str, AttributeValue]:
        """Map the unwrapped reply object onto the template's attributes."""
        pass

    @abstractmethod
    def summarize(
        self,
        entity_name: str,
        template: AnalysisTemplate,
        attributes: Dict[str, AttributeValue],
        focus: Optional[str] = None
    ) -> str:
        """One-paragraph description built from populated attributes."""
        pass
