"""LLM completion client backed by the Anthropic Messages API."""
import json
from typing import Optional, Any
from anthropic import Anthropic
from pydantic import BaseModel

from utils.logger import setup_logger
from utils.errors import LLMError, LLMResponseError
import config

logger = setup_logger(__name__)

JSON_INSTRUCTION = (
    "\n\nRespond with valid JSON only. Do not include any prose, "
    "explanations or markdown outside the JSON."
)


class Completion(BaseModel):
    """Text returned by a completion call plus its token usage."""
    text: str
    input_tokens: int = 0
    output_tokens: int = 0


def extract_json_text(response_text: str) -> Optional[str]:
    """Pull a JSON payload out of a model reply.

    Tries the raw text, then a fenced code block, then the span between the
    first opening and last closing bracket.

    Returns:
        JSON text, or None when nothing parseable was found
    """
    text = response_text.strip()
    try:
        json.loads(text)
        return text
    except json.JSONDecodeError:
        pass

    extracted = None
    # Try ```json ... ```
    if "```json" in text:
        parts = text.split("```json")
        if len(parts) > 1:
            extracted = parts[1].split("```")[0].strip()
    # Try ``` ... ``` (generic code block)
    elif "```" in text:
        parts = text.split("```")
        if len(parts) >= 3:
            extracted = parts[1].strip()

    if extracted:
        try:
            json.loads(extracted)
            return extracted
        except json.JSONDecodeError:
            pass

    # Last resort: first [ or { up to the matching last ] or }
    start_arr = text.find('[')
    start_obj = text.find('{')
    if start_arr == -1 and start_obj == -1:
        return None

    if start_arr == -1 or (start_obj != -1 and start_obj < start_arr):
        start, end_char = start_obj, '}'
    else:
        start, end_char = start_arr, ']'

    end = text.rfind(end_char)
    if end <= start:
        return None

    candidate = text[start:end + 1]
    try:
        json.loads(candidate)
        return candidate
    except json.JSONDecodeError:
        return None


def parse_json(completion: Completion) -> Any:
    """Decode the JSON body of a completion made in JSON mode.

    Raises:
        LLMError: If the text is not valid JSON
    """
    try:
        return json.loads(completion.text)
    except json.JSONDecodeError as e:
        raise LLMResponseError(f"Unparsable JSON response: {e}") from e


class LLMClient:
    """Thin wrapper over the Anthropic client.

    No retries happen here: callers decide whether a failed call degrades
    to a placeholder or propagates.
    """

    def __init__(
        self,
        anthropic_client: Optional[Anthropic] = None,
        max_tokens: int = config.LLM_MAX_TOKENS
    ):
        self.client = anthropic_client or Anthropic(api_key=config.ANTHROPIC_API_KEY)
        self.max_tokens = max_tokens
        self.total_tokens_used = 0

    def complete(self, prompt: str, model: str, json_mode: bool = False) -> Completion:
        """Run one completion.

        Args:
            prompt: Prompt text
            model: Model name
            json_mode: Ask for JSON and strip anything around it

        Returns:
            Completion with text and token counts

        Raises:
            LLMError: On provider failure or, in JSON mode, a reply with no JSON
        """
        if json_mode:
            prompt = prompt + JSON_INSTRUCTION

        try:
            message = self.client.messages.create(
                model=model,
                max_tokens=self.max_tokens,
                temperature=config.LLM_TEMPERATURE,
                messages=[
                    {"role": "user", "content": prompt}
                ]
            )
        except Exception as e:
            raise LLMError(f"{type(e).__name__}: {e}") from e

        input_tokens = message.usage.input_tokens
        output_tokens = message.usage.output_tokens
        self.total_tokens_used += input_tokens + output_tokens

        response_text = "".join(
            block.text for block in message.content if getattr(block, "type", "text") == "text"
        )

        if json_mode:
            extracted = extract_json_text(response_text)
            if extracted is None:
                logger.warning(f"No JSON found in response from {model}: {response_text[:200]}")
                raise LLMResponseError("Response did not contain valid JSON")
            response_text = extracted

        return Completion(text=response_text, input_tokens=input_tokens, output_tokens=output_tokens)
