"""
Thin wrapper around the Anthropic client shared by every agent.

Agents (context, brief, transcript analysis) each own their prompts and
their fallback behaviour. What they share is here:

- one configured anthropic.Anthropic client
- complete(): system + user prompt in, text out
- parse_json_response(): tolerant JSON extraction from model output

JSON extraction tries, in order:
1. Clean JSON (ideal)
2. JSON wrapped in markdown code blocks (```json ... ```)
3. The first {...} object embedded in surrounding text
and returns None when all three fail so the caller can fall back.
"""

import json
import logging
import re
from typing import Optional

import anthropic

from followthrough.config import AnthropicConfig

logger = logging.getLogger(__name__)


class LLMClient:
    """
    Usage:
        llm = LLMClient(config.anthropic)
        text = llm.complete(SYSTEM_PROMPT, "Summarize this meeting ...")
    """

    def __init__(self, config: AnthropicConfig):
        self.config = config
        self.client = anthropic.Anthropic(api_key=config.api_key)

    def complete(
        self,
        system: str,
        prompt: str,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> str:
        """
        Send one prompt and return the text of the first content block.

        Raises:
            anthropic.APIError: on API failures; callers decide the fallback
        """
        response = self.client.messages.create(
            model=self.config.model,
            max_tokens=max_tokens or self.config.max_tokens,
            temperature=self.config.temperature if temperature is None else temperature,
            system=system,
            messages=[{"role": "user", "content": prompt}],
        )
        return response.content[0].text


def parse_json_response(response_text: str) -> Optional[dict]:
    """Extract a JSON object from model output, or None."""
    try:
        data = json.loads(response_text)
        if isinstance(data, dict):
            return data
    except json.JSONDecodeError:
        pass

    json_match = re.search(r"```(?:json)?\s*\n?(.*?)\n?```", response_text, re.DOTALL)
    if json_match:
        try:
            data = json.loads(json_match.group(1))
            if isinstance(data, dict):
                return data
        except json.JSONDecodeError:
            pass

    json_match = re.search(r"\{.*\}", response_text, re.DOTALL)
    if json_match:
        try:
            data = json.loads(json_match.group(0))
            if isinstance(data, dict):
                return data
        except json.JSONDecodeError:
            pass

    logger.debug("No JSON object found in model response")
    return None
