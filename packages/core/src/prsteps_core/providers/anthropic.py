from __future__ import annotations

from prsteps_core.providers.base import BaseGuide, model_error


class AnthropicGuide(BaseGuide):
    MODEL = "claude-sonnet-4-20250514"
    # Low temperature keeps the JSON contract stable across retries.
    TEMPERATURE = 0.2

    def __init__(self, api_key: str, model: str | None = None, timeout: float = 60):
        super().__init__(model)
        try:
            from anthropic import Anthropic
        except ImportError:
            raise ImportError(
                "The 'anthropic' package is required for this provider. "
                "Install it with: pip install 'prsteps[anthropic]'"
            )
        self.client = Anthropic(api_key=api_key, timeout=timeout)

    def _call_api(self, system_prompt: str, user_prompt: str) -> str:
        # Imported inside the method because the anthropic package is optional;
        # __init__ already validated it is installed before we reach here.
        import anthropic
        from anthropic.types import TextBlock

        try:
            response = self.client.messages.create(
                model=self.model,
                system=system_prompt,
                messages=[{"role": "user", "content": user_prompt}],
                temperature=self.TEMPERATURE,
                max_tokens=self.MAX_TOKENS,
            )
        except anthropic.APIStatusError as e:
            raise model_error("anthropic", e, e.status_code) from e
        except anthropic.APIError as e:
            raise model_error("anthropic", e) from e
        text_blocks = [block.text for block in response.content if isinstance(block, TextBlock)]
        return "".join(text_blocks).strip()
