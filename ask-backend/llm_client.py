"""
Language-model collaborators.

Both classes implement propose(prompt) / summarize(context) and raise
CollaboratorError on any transport or provider failure. There is no retry;
a failed call is terminal for the branch that made it.

- GroqCollaborator: Groq chat model through llama-index
- OpenAICompatibleCollaborator: any /chat/completions endpoint over aiohttp
"""

import asyncio
import logging
from datetime import datetime
from typing import Dict, List, Optional

import aiohttp
from llama_index.core.llms import ChatMessage, MessageRole
from llama_index.llms.groq import Groq

from config import ServiceSettings
from errors import CollaboratorError
from proposer import SUMMARY_SYSTEM_PROMPT

logger = logging.getLogger(__name__)

PROPOSER_SYSTEM_PROMPT = (
    "You translate questions about experiments into a single read-only query. "
    "Reply with one JSON object and nothing else."
)


class GroqCollaborator:
    """Groq chat model via llama-index."""

    def __init__(
        self,
        api_key: str,
        model: str,
        proposal_tokens: int = 800,
        summary_tokens: int = 5000,
    ):
        if not api_key:
            raise ValueError(
                "GROQ_API_KEY not found! Set it in your environment. "
                "You can get one at: https://console.groq.com/keys"
            )
        self.model = model
        self._proposer = Groq(model=model, api_key=api_key, temperature=0.0, max_tokens=proposal_tokens)
        self._summarizer = Groq(model=model, api_key=api_key, temperature=0.2, max_tokens=summary_tokens)
        logger.info(f"[PROPOSER] Groq LLM initialized: {model}")

    async def _chat(self, llm: Groq, system: str, user: str) -> str:
        messages = [
            ChatMessage(role=MessageRole.SYSTEM, content=system),
            ChatMessage(role=MessageRole.USER, content=user),
        ]
        start_time = datetime.now()
        try:
            response = await llm.achat(messages)
        except Exception as e:
            logger.error(f"[PROPOSER] Groq call failed: {e}")
            raise CollaboratorError(f"Groq API error: {e}") from e

        text = (response.message.content or "").strip()
        if not text:
            raise CollaboratorError(f"Empty response from Groq model {self.model}")

        elapsed = (datetime.now() - start_time).total_seconds()
        logger.info(f"[PROPOSER] Groq responded in {elapsed:.2f}s")
        return text

    async def propose(self, prompt: str) -> str:
        return await self._chat(self._proposer, PROPOSER_SYSTEM_PROMPT, prompt)

    async def summarize(self, context: str) -> str:
        return await self._chat(self._summarizer, SUMMARY_SYSTEM_PROMPT, context)

    async def close(self):
        return None


class OpenAICompatibleCollaborator:
    """Chat-completions client for any OpenAI-compatible endpoint."""

    def __init__(
        self,
        api_key: Optional[str],
        base_url: str,
        model: str,
        timeout_seconds: int = 120,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout_seconds = timeout_seconds
        self.session: Optional[aiohttp.ClientSession] = None

    async def _ensure_session(self):
        """Ensure aiohttp session exists"""
        if self.session is None or self.session.closed:
            timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
            self.session = aiohttp.ClientSession(timeout=timeout)

    async def close(self):
        """Close aiohttp session"""
        if self.session and not self.session.closed:
            await self.session.close()

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def _complete(self, messages: List[Dict[str, str]], max_tokens: int, temperature: float) -> str:
        await self._ensure_session()

        url = f"{self.base_url}/chat/completions"
        payload = {
            "model": self.model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }

        try:
            start_time = datetime.now()
            async with self.session.post(url, json=payload, headers=self._headers()) as response:
                response.raise_for_status()
                result = await response.json()
        except aiohttp.ClientError as e:
            logger.error(f"[PROPOSER] HTTP error calling {url}: {e}")
            raise CollaboratorError(f"Chat completion API error: {e}") from e
        except asyncio.TimeoutError as e:
            logger.error(f"[PROPOSER] Timed out after {self.timeout_seconds}s calling {url}")
            raise CollaboratorError(f"Chat completion timed out after {self.timeout_seconds}s") from e
        except ValueError as e:
            # non-JSON body
            logger.error(f"[PROPOSER] Unreadable response from {url}: {e}")
            raise CollaboratorError(f"Chat completion returned invalid JSON: {e}") from e

        try:
            text = (result["choices"][0]["message"]["content"] or "").strip()
        except (KeyError, IndexError, TypeError) as e:
            raise CollaboratorError(f"Unexpected chat completion payload: {e}") from e

        if not text:
            raise CollaboratorError(f"Empty response from model {self.model}")

        elapsed = (datetime.now() - start_time).total_seconds()
        logger.info(f"[PROPOSER] {self.model} responded in {elapsed:.2f}s")
        return text

    async def propose(self, prompt: str) -> str:
        return await self._complete(
            [
                {"role": "system", "content": PROPOSER_SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            max_tokens=800,
            temperature=0.0,
        )

    async def summarize(self, context: str) -> str:
        return await self._complete(
            [
                {"role": "system", "content": SUMMARY_SYSTEM_PROMPT},
                {"role": "user", "content": context},
            ],
            max_tokens=5000,
            temperature=0.2,
        )


def create_collaborator(settings: ServiceSettings):
    """Collaborator for the configured AI_PROVIDER."""
    if settings.ai_provider == "openai":
        return OpenAICompatibleCollaborator(
            api_key=settings.openai_api_key,
            base_url=settings.openai_base_url,
            model=settings.openai_model,
        )
    if settings.ai_provider != "groq":
        raise ValueError(f"Unknown AI_PROVIDER: {settings.ai_provider!r} (expected groq or openai)")
    return GroqCollaborator(api_key=settings.groq_api_key, model=settings.groq_model)
