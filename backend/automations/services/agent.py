"""Quick agent - runs an automation prompt through the LLM."""

import logging
from typing import AsyncIterator

from google import genai
from google.genai import types

from automations.core.config import settings

logger = logging.getLogger(__name__)

SYSTEM_PROMPT_BASE = """You are an AI agent executing a scheduled automation.
Nobody is watching this run interactively; your final answer is stored as the run summary.

IMPORTANT RULES:
- Carry out the task described by the user message.
- Do NOT fabricate or make up data.
- Finish with a short summary of what you did and anything that needs human attention."""

FREE_AGENT_ADDENDUM = """

You are running in free-agent mode: do not stop to ask for confirmation, make reasonable
decisions on your own and note any assumptions in the summary."""


def build_system_prompt(free_agent_mode: bool = False) -> str:
    prompt = SYSTEM_PROMPT_BASE
    if free_agent_mode:
        prompt += FREE_AGENT_ADDENDUM
    return prompt


class Agent:
    """Single-shot agent used for automation runs."""

    def __init__(self, model: str | None = None, free_agent_mode: bool = False):
        self.client = genai.Client(api_key=settings.gemini_api_key)
        self.model = model or settings.default_model
        self.free_agent_mode = free_agent_mode

    async def run(self, prompt: str) -> AsyncIterator[str]:
        """Run the prompt. Yields text chunks as they become available."""
        config = types.GenerateContentConfig(
            system_instruction=build_system_prompt(self.free_agent_mode),
        )
        contents = [types.Content(role="user", parts=[types.Part(text=prompt)])]

        logger.info(
            f"=== Automation LLM Call ===\n"
            f"  Model: {self.model}\n"
            f"  Free agent: {self.free_agent_mode}\n"
            f"  Prompt: {prompt[:200]}"
        )

        response = await self.client.aio.models.generate_content(
            model=self.model,
            contents=contents,
            config=config,
        )

        usage = response.usage_metadata
        if usage:
            logger.info(
                f"=== LLM Response ===\n"
                f"  Prompt tokens: {usage.prompt_token_count}\n"
                f"  Response tokens: {usage.candidates_token_count}\n"
                f"  Total tokens: {usage.total_token_count}"
            )

        if response.text:
            yield response.text
