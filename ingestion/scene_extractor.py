"""LLM-assisted scene segmentation of a chapter."""
from typing import List, Dict, Any, Optional

from budget.governor import BudgetGovernor
from budget.task_config import TaskConfigResolver
from ingestion.models import Chapter, Scene
from ingestion import prompts
from llm.completion import LLMClient, parse_json
from utils.errors import LLMError
from utils.logger import setup_logger
import config

logger = setup_logger(__name__)

TASK = "sceneExtraction"


class SceneExtractor:
    """Splits a chapter into scenes located by verbatim quote anchors."""

    def __init__(
        self,
        llm: LLMClient,
        governor: BudgetGovernor,
        resolver: Optional[TaskConfigResolver] = None,
        max_prompt_chars: int = config.MAX_SCENE_PROMPT_CHARS
    ):
        self.llm = llm
        self.governor = governor
        self.resolver = resolver or governor.resolver
        self.max_prompt_chars = max_prompt_chars

    def extract(self, chapter: Chapter, chapter_text: str, start_global_index: int) -> List[Scene]:
        """Extract scenes for one chapter.

        Args:
            chapter: Chapter being segmented
            chapter_text: Text of the chapter (``document[start:end]``)
            start_global_index: Global index of this chapter's first scene

        Returns:
            Scenes with absolute offsets, ordered and non-overlapping

        Raises:
            BudgetExceededError: If the inline budget check denies the call
        """
        task_config = self.resolver.resolve_task(TASK)
        self.governor.require_budget(TASK, task_config.model, 1)

        prompt_text = chapter_text
        if len(prompt_text) > self.max_prompt_chars:
            logger.warning(
                f"Chapter {chapter.chapter_index} too long for a single pass "
                f"({len(prompt_text)} chars); truncating to {self.max_prompt_chars}"
            )
            prompt_text = prompt_text[:self.max_prompt_chars]

        prompt = prompts.scene_extraction_prompt(chapter.title, prompt_text)

        try:
            completion = self.llm.complete(prompt, task_config.model, json_mode=True)
        except LLMError as e:
            self.governor.charge_budget(TASK, task_config.model, task_config.provider, 1)
            logger.error(f"Scene extraction failed for chapter {chapter.chapter_index}: {e}")
            return [self._fallback_scene(chapter, start_global_index)]

        self.governor.charge_budget(
            TASK, task_config.model, task_config.provider, 1,
            completion.input_tokens, completion.output_tokens
        )

        try:
            items = self._scene_items(parse_json(completion))
        except LLMError as e:
            logger.error(f"Scene extraction returned bad JSON for chapter {chapter.chapter_index}: {e}")
            items = []

        scenes = self.locate_scenes(items, chapter, chapter_text, start_global_index)
        if not scenes:
            logger.warning(f"No usable scenes for chapter {chapter.chapter_index}; using whole chapter")
            return [self._fallback_scene(chapter, start_global_index)]

        logger.info(f"Chapter {chapter.chapter_index}: {len(scenes)} scenes")
        return scenes

    @staticmethod
    def _scene_items(data: Any) -> List[Dict[str, Any]]:
        if isinstance(data, dict):
            data = data.get('scenes', [])
        if not isinstance(data, list):
            return []
        return [item for item in data if isinstance(item, dict)]

    @staticmethod
    def locate_scenes(
        items: List[Dict[str, Any]],
        chapter: Chapter,
        chapter_text: str,
        start_global_index: int
    ) -> List[Scene]:
        """Turn quote anchors into absolute offsets with a monotonic cursor.

        A start quote that can't be found falls back to the cursor; an end
        quote that can't be found falls back to an even share of what is
        left. The last scene is stretched to the chapter end.
        """
        length = len(chapter_text)
        count = len(items)
        located = []
        cursor = 0

        for item in items:
            start_quote = (item.get('startQuote') or '').strip()
            end_quote = (item.get('endQuote') or '').strip()

            found = chapter_text.find(start_quote, cursor) if start_quote else -1
            start = found if found != -1 else cursor

            found = chapter_text.find(end_quote, start) if end_quote else -1
            if found != -1:
                end = found + len(end_quote)
            else:
                end = start + (length - start) // max(count, 1)

            end = min(end, length)
            if end <= start:
                continue

            located.append((item, start, end))
            cursor = end

        if located:
            item, start, _ = located[-1]
            located[-1] = (item, start, length)

        scenes = []
        for local_index, (item, start, end) in enumerate(located):
            hints = item.get('temporalHints')
            events = item.get('events')
            scenes.append(Scene(
                chapter_index=chapter.chapter_index,
                chapter_id=chapter.id,
                local_index=local_index,
                global_scene_index=start_global_index + local_index,
                title=str(item.get('title') or f"Scene {start_global_index + local_index}"),
                summary=str(item.get('summary') or ''),
                pov=item.get('pov') if isinstance(item.get('pov'), str) else None,
                location=item.get('location') if isinstance(item.get('location'), str) else None,
                temporal_hints=hints if isinstance(hints, dict) else {},
                events=[str(e) for e in events] if isinstance(events, list) else [],
                start_char=chapter.start_char + start,
                end_char=chapter.start_char + end
            ))
        return scenes

    @staticmethod
    def _fallback_scene(chapter: Chapter, start_global_index: int) -> Scene:
        return Scene(
            chapter_index=chapter.chapter_index,
            chapter_id=chapter.id,
            local_index=0,
            global_scene_index=start_global_index,
            title="Chapter Scene",
            summary="Full chapter content (Extraction Failed)",
            start_char=chapter.start_char,
            end_char=chapter.end_char
        )
