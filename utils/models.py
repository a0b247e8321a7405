# -----------------------------------------------------------------------------
# models.py: Submits a conversation to the configured model and returns text.
# "gemini/..." and "google/..." models go through google-generativeai, every
# other provider through an OpenAI-compatible endpoint.
# -----------------------------------------------------------------------------
from base64 import b64encode
from datetime import datetime
import logging
from typing import Optional, Sequence

import google.generativeai as genai
from google.generativeai.types import BlockedPromptException, HarmBlockThreshold, HarmCategory, StopCandidateException
from openai import AsyncOpenAI

from utils.config import gemini_api_key
from utils.thread_history import Turn


GEMINI_PROVIDERS = ("gemini", "google")

SAFETY_SETTINGS = [
    {"category": HarmCategory.HARM_CATEGORY_HARASSMENT, "threshold": HarmBlockThreshold.BLOCK_ONLY_HIGH},
    {"category": HarmCategory.HARM_CATEGORY_HATE_SPEECH, "threshold": HarmBlockThreshold.BLOCK_MEDIUM_AND_ABOVE},
    {"category": HarmCategory.HARM_CATEGORY_SEXUALLY_EXPLICIT, "threshold": HarmBlockThreshold.BLOCK_LOW_AND_ABOVE},
    {"category": HarmCategory.HARM_CATEGORY_DANGEROUS_CONTENT, "threshold": HarmBlockThreshold.BLOCK_MEDIUM_AND_ABOVE},
]


class ResponseBlockedError(Exception):
    """Raised when Gemini refuses to return a candidate for safety reasons."""
    def __init__(self, reason: str = "SAFETY"):
        super().__init__(f"Candidate was blocked due to {reason}")


def build_system_prompt(config: dict) -> Optional[str]:
    if not (system_prompt := config.get("system_prompt")):
        return None
    now = datetime.now().astimezone()
    prompt = system_prompt.replace("{date}", now.strftime("%B %d, %Y")).replace("{time}", now.strftime("%I:%M %p %Z"))
    return prompt.strip()

def is_gemini_model(provider_slash_model: str) -> bool:
    return provider_slash_model.split("/", 1)[0] in GEMINI_PROVIDERS

async def _generate_gemini(config: dict, model: str, model_parameters: Optional[dict],
                           turns: Sequence[Turn], question: str, images: Sequence[dict]) -> str:
    genai.configure(api_key=gemini_api_key(config))
    gmodel = genai.GenerativeModel(
        model,
        safety_settings=SAFETY_SETTINGS,
        generation_config=model_parameters,
        system_instruction=build_system_prompt(config),
    )
    chat = gmodel.start_chat(history=[turn.to_gemini() for turn in turns])
    try:
        response = await chat.send_message_async([question, *images] if images else question)
    except (BlockedPromptException, StopCandidateException) as err:
        raise ResponseBlockedError() from err
    if not response.candidates:
        raise ResponseBlockedError()
    return response.text

async def _generate_openai(config: dict, provider: str, model: str, model_parameters: Optional[dict],
                           turns: Sequence[Turn], question: str, images: Sequence[dict]) -> str:
    provider_config = config["providers"][provider]
    openai_client = AsyncOpenAI(base_url=provider_config["base_url"], api_key=provider_config.get("api_key", "sk-no-key-required"))
    messages = []
    if system_prompt := build_system_prompt(config):
        messages.append({"role": "system", "content": system_prompt})
    messages.extend(turn.to_openai() for turn in turns)
    content = question
    if images:
        content = ([dict(type="text", text=question)] if question else []) + [
            dict(type="image_url", image_url=dict(url=f"data:{image['mime_type']};base64,{b64encode(image['data']).decode('utf-8')}"))
            for image in images
        ]
    messages.append({"role": "user", "content": content})
    response = await openai_client.chat.completions.create(model=model, messages=messages, stream=False, extra_body=model_parameters)
    return response.choices[0].message.content or ""

async def generate_response(config: dict, provider_slash_model: str, turns: Sequence[Turn],
                            question: str, images: Sequence[dict] = ()) -> str:
    """
    Sends `turns` as history followed by `question` and returns the reply text.
    `images` are inline parts shaped like {"mime_type": ..., "data": bytes}.
    """
    provider, model = provider_slash_model.split("/", 1)
    model_parameters = config["models"].get(provider_slash_model)
    logging.info(f"Generating response with {provider_slash_model} (history turns: {len(turns)}, images: {len(images)})")
    if provider in GEMINI_PROVIDERS:
        return await _generate_gemini(config, model, model_parameters, turns, question, images)
    return await _generate_openai(config, provider, model, model_parameters, turns, question, images)
