from typing import Callable, Dict, List, Optional
import asyncio
import logging

import openai
from openai import OpenAI

from lib.error_handler import UpstreamUnavailable
from lib.executor import run_blocking

logger = logging.getLogger(__name__)


class OpenAIClient:
    def __init__(self, api_key: str, timeout: float = 20.0, client_factory: Callable[..., OpenAI] = OpenAI):
        self.timeout = timeout
        self.client = client_factory(api_key=api_key, timeout=timeout, max_retries=0)

    async def generate_response(
        self,
        messages: List[Dict[str, str]],
        model: str,
        max_tokens: Optional[int] = None,
        temperature: float = 0.7
    ) -> str:
        """
        Generate a chat completion and return the text of its single choice
        """
        request = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
        }
        if max_tokens:
            request["max_tokens"] = max_tokens

        try:
            # The SDK call blocks, so run it in a worker thread and bound the wait
            response = await run_blocking(
                lambda: self.client.chat.completions.create(**request),
                timeout=self.timeout
            )
        except asyncio.TimeoutError:
            logger.error(f"Completion request timed out after {self.timeout}s")
            raise UpstreamUnavailable(f"Completion timed out after {self.timeout}s")
        except openai.APIError as e:
            logger.error(f"Completion request failed: {str(e)}")
            raise UpstreamUnavailable(f"Response generation failed: {str(e)}")

        content = response.choices[0].message.content if response.choices else None
        if not content or not content.strip():
            raise UpstreamUnavailable("Completion returned no content")

        return content.strip()
