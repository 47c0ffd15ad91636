from __future__ import annotations

try:
    import openai as _openai
except ImportError:
    _openai = None  # type: ignore[assignment]

from prsteps_core.providers.base import BaseGuide, model_error


class OpenAIGuide(BaseGuide):
    MODEL = "gpt-4o"
    TEMPERATURE = 0.2

    def __init__(
        self,
        api_key: str,
        model: str | None = None,
        base_url: str | None = None,
        timeout: float = 60,
    ):
        super().__init__(model)
        if _openai is None:
            raise ImportError(
                "The 'openai' package is required for this provider. " "Install it with: pip install 'prsteps[openai]'"
            )
        # base_url lets any OpenAI-compatible endpoint (OpenRouter, a local
        # gateway) stand in for api.openai.com.
        self.client = _openai.OpenAI(api_key=api_key, base_url=base_url, timeout=timeout)

    def _call_api(self, system_prompt: str, user_prompt: str) -> str:
        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
                temperature=self.TEMPERATURE,
                max_tokens=self.MAX_TOKENS,
                response_format={"type": "json_object"},
            )
        except _openai.APIStatusError as e:
            raise model_error("openai", e, e.status_code) from e
        except _openai.APIError as e:
            raise model_error("openai", e) from e
        return response.choices[0].message.content or ""
