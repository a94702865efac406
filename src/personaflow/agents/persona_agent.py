"""
PersonaAgent: plays a persona with a real LLM (OpenAI/Anthropic).

The persona document becomes the system prompt; the task, the shared
context view and the role's inbox become the user message. The reply may
contain a fenced ```yaml or ```json block with a role output; otherwise the
whole reply is the summary.

Environment:
    OPENAI_API_KEY - for the openai provider
    ANTHROPIC_API_KEY - for the anthropic provider
"""

import json
import logging
import os
import re
import time
from typing import Any, Dict, Optional, Tuple

import yaml

from personaflow.config import ensure_dotenv
from personaflow.personas.models import Persona

from .base_agent import RoleAgent

logger = logging.getLogger(__name__)

_BLOCK_RE = re.compile(r"```(yaml|yml|json)[ \t]*\n(.*?)```", re.DOTALL | re.IGNORECASE)

OUTPUT_INSTRUCTIONS = """\
Answer in Markdown. End your answer with one fenced ```yaml block holding:
summary (string), recommendations (list of topic/choice/rationale/confidence/security),
artifacts (list of name/kind/content), issues (list of title/description/severity),
resolved_issues (list of issue_id/resolution), messages (list of to/content)."""


def parse_reply(text: str) -> Dict[str, Any]:
    """
    Turn an LLM reply into a role output dict.

    The last fenced yaml/json block that parses to a mapping wins; the text
    before it becomes the summary when the block has none.
    """
    for match in reversed(list(_BLOCK_RE.finditer(text))):
        try:
            data = yaml.safe_load(match.group(2))
        except yaml.YAMLError as e:
            logger.warning(f"Ignoring unparseable {match.group(1)} block: {e}")
            continue
        if isinstance(data, dict):
            if not data.get("summary"):
                data["summary"] = text[: match.start()].strip()
            return data
    return {"summary": text.strip()}


class PersonaAgent(RoleAgent):
    """
    Role agent backed by an LLM and a persona document.

    Configuration (llm section):
        provider: "openai" or "anthropic"
        model: model name
        temperature: 0.0-1.0
        max_tokens: maximum response length
    """

    DEFAULT_MODELS = {"openai": "gpt-4o-mini", "anthropic": "claude-3-5-haiku-latest"}

    def __init__(
        self,
        persona: Persona,
        config_path: Optional[str] = None,
        config: Optional[Dict[str, Any]] = None,
        client: Any = None,
    ):
        super().__init__(config_path, config)
        self.persona = persona
        self.name = persona.name

        llm_config = self.config.get("llm", {})
        self.provider = llm_config.get("provider", "openai")
        if self.provider not in self.DEFAULT_MODELS:
            raise ValueError(f"Unknown LLM provider: {self.provider}")
        self.model = llm_config.get("model") or persona.model or self.DEFAULT_MODELS[self.provider]
        self.temperature = llm_config.get("temperature", 0.3)
        self.max_tokens = llm_config.get("max_tokens", 2000)

        self._client = client
        logger.info(
            f"PersonaAgent initialized: persona={persona.name}, provider={self.provider}, model={self.model}"
        )

    def _get_client(self):
        """Create the LLM client on first use."""
        if self._client is not None:
            return self._client

        ensure_dotenv()
        if self.provider == "openai":
            api_key = os.getenv("OPENAI_API_KEY")
            if not api_key:
                raise ValueError("OPENAI_API_KEY environment variable not set")

            from openai import OpenAI
            self._client = OpenAI(api_key=api_key)
            logger.info("OpenAI client initialized")

        elif self.provider == "anthropic":
            api_key = os.getenv("ANTHROPIC_API_KEY")
            if not api_key:
                raise ValueError("ANTHROPIC_API_KEY environment variable not set")

            from anthropic import Anthropic
            self._client = Anthropic(api_key=api_key)
            logger.info("Anthropic client initialized")

        return self._client

    def build_prompt(
        self,
        action: str,
        params: Dict[str, Any],
        context: Dict[str, Any],
    ) -> Tuple[str, str]:
        """Return (system, user) messages for a task."""
        system = self.persona.prompt or self.persona.description or f"You are {self.persona.name}."
        system = f"{system}\n\n{OUTPUT_INSTRUCTIONS}"

        sections = [f"## Task\nStage: {context.get('stage', action)}\nAction: {action}"]
        if params:
            sections.append("## Parameters\n" + json.dumps(params, indent=2, default=str))
        shared = {
            key: context.get(key)
            for key in ("project", "task", "decisions", "artifacts", "open_issues")
            if context.get(key)
        }
        if shared:
            sections.append("## Shared context\n" + json.dumps(shared, indent=2, default=str))
        if context.get("stage_outputs"):
            sections.append(
                "## Earlier outputs in this stage\n"
                + json.dumps(context["stage_outputs"], indent=2, default=str)
            )
        for message in context.get("inbox") or []:
            sections.append(f"## Message from {message.get('sender')}\n{message.get('content')}")
        return system, "\n\n".join(sections)

    def execute(
        self,
        action: str,
        params: Dict[str, Any],
        context: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        system, user = self.build_prompt(action, params, context or {})
        client = self._get_client()

        logger.info(f"[{self.persona.name}] Calling {self.provider}/{self.model} for {action}...")
        start_time = time.time()

        if self.provider == "openai":
            response = client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": user},
                ],
                temperature=self.temperature,
                max_tokens=self.max_tokens,
            )
            text = response.choices[0].message.content or ""
            usage = response.usage
            tokens = (usage.prompt_tokens, usage.completion_tokens) if usage else (0, 0)
        else:
            response = client.messages.create(
                model=self.model,
                system=system,
                max_tokens=self.max_tokens,
                temperature=self.temperature,
                messages=[{"role": "user", "content": user}],
            )
            text = "".join(getattr(block, "text", "") for block in response.content)
            usage = response.usage
            tokens = (usage.input_tokens, usage.output_tokens) if usage else (0, 0)

        generation_time = time.time() - start_time
        logger.info(f"[{self.persona.name}] Generated {tokens[1]} tokens in {generation_time:.2f}s")

        output = parse_reply(text)
        output["metrics"] = {
            "provider": self.provider,
            "model": self.model,
            "tokens_prompt": tokens[0],
            "tokens_completion": tokens[1],
            "generation_time_seconds": round(generation_time, 2),
        }
        return output
