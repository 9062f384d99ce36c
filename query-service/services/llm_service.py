import logging
import re
from typing import Any, Dict, Tuple

from config import settings

logger = logging.getLogger(__name__)


class LLMResponse:
    """Minimal stand-in for LangChain's AIMessage returned by native SDK wrappers."""

    def __init__(self, text: str):
        self.content = text


def create_llm() -> Tuple[Any, Dict[str, Any]]:
    """
    Factory function to create LLM instance based on provider setting.

    Every returned client exposes ``invoke(messages)`` returning an object with
    ``.content``, so the agent stays provider-agnostic.
    """
    provider = settings.llm_provider.lower()

    logger.info("🤖 Initializing LLM Provider: %s", provider)

    factories = {
        "openai": create_openai_llm,
        "openrouter": create_openrouter_llm,
        "gemini": create_gemini_llm,
        "local": create_local_llm,
        "huggingface": create_huggingface_llm,
    }
    if provider not in factories:
        raise ValueError(
            f"Unsupported LLM provider: {provider}. Use one of: {', '.join(factories)}"
        )
    return factories[provider]()


def _chat_openai(**kwargs):
    try:
        from langchain_openai import ChatOpenAI
    except ImportError as e:
        raise ImportError("langchain-openai not installed. Run: pip install langchain-openai") from e

    return ChatOpenAI(temperature=0, max_retries=2, timeout=120, **kwargs)


def create_openai_llm():
    """Create OpenAI LLM instance"""
    if not settings.openai_api_key:
        raise ValueError("OPENAI_API_KEY is required when using OpenAI provider")

    llm = _chat_openai(model=settings.openai_model, api_key=settings.openai_api_key)
    logger.info("✅ OpenAI LLM initialized: %s", settings.openai_model)
    return llm, {"provider": "openai", "model": settings.openai_model}


def create_openrouter_llm():
    """Create an OpenRouter LLM instance through its OpenAI-compatible endpoint"""
    if not settings.openrouter_api_key:
        raise ValueError("OPENROUTER_API_KEY is required when using OpenRouter provider")

    llm = _chat_openai(
        model=settings.openrouter_model,
        api_key=settings.openrouter_api_key,
        base_url=settings.openrouter_base_url,
    )
    logger.info("✅ OpenRouter LLM initialized: %s", settings.openrouter_model)
    return llm, {"provider": "openrouter", "model": settings.openrouter_model}


def create_local_llm():
    """Create Local LLM instance via LM Studio"""
    llm = _chat_openai(
        model=settings.local_llm_model,
        base_url=settings.local_llm_base_url,
        api_key="not-needed",  # LM Studio doesn't require API key
    )
    logger.info("✅ Local LLM initialized: %s (%s)", settings.local_llm_model, settings.local_llm_base_url)
    return llm, {"provider": "local", "model": settings.local_llm_model}


class GeminiNativeLLM:
    """Wraps the google-genai client behind a LangChain-style ``invoke``."""

    def __init__(self, api_key: str, model_name: str):
        from google import genai

        self.client = genai.Client(api_key=api_key)
        self.model_name = model_name

    def invoke(self, messages):
        system_instruction = None
        contents = []

        for msg in messages:
            content = getattr(msg, 'content', str(msg))
            if getattr(msg, 'type', 'human') == 'system':
                system_instruction = content
            else:
                contents.append(content)

        response = self.client.models.generate_content(
            model=self.model_name,
            contents=contents,
            config={
                'system_instruction': system_instruction,
                'temperature': 0.0,
                'response_mime_type': 'application/json'
            }
        )
        return LLMResponse(response.text)


def create_gemini_llm():
    """Create Google Gemini LLM instance using modern google-genai SDK"""
    if not settings.google_api_key:
        raise ValueError("GOOGLE_API_KEY is required when using Gemini provider")

    try:
        llm = GeminiNativeLLM(settings.google_api_key, settings.gemini_model)
    except ImportError as e:
        raise ImportError("google-genai not installed. Run: pip install google-genai") from e

    logger.info("✅ Google Gemini (Native SDK) initialized: %s", settings.gemini_model)
    return llm, {"provider": "gemini", "model": settings.gemini_model, "sdk": "google-genai"}


class HuggingFaceNativeLLM:
    """Wraps huggingface_hub's InferenceClient behind a LangChain-style ``invoke``."""

    ROLES = {'system': 'system', 'human': 'user', 'ai': 'assistant'}

    def __init__(self, api_key: str, model_name: str):
        from huggingface_hub import InferenceClient

        self.client = InferenceClient(model=model_name, token=api_key)

    def invoke(self, messages):
        hf_messages = [
            {
                "role": self.ROLES.get(getattr(msg, 'type', 'human'), 'user'),
                "content": getattr(msg, 'content', str(msg)),
            }
            for msg in messages
        ]
        response = self.client.chat_completion(
            messages=hf_messages,
            max_tokens=1024,
            temperature=0.1
        )
        return LLMResponse(response.choices[0].message.content)


def create_huggingface_llm():
    """Create Hugging Face LLM instance via Inference API"""
    if not settings.huggingface_api_key:
        raise ValueError("HUGGINGFACE_API_KEY is required when using HuggingFace provider")

    try:
        llm = HuggingFaceNativeLLM(settings.huggingface_api_key, settings.huggingface_model)
    except ImportError as e:
        raise ImportError("huggingface_hub not installed. Run: pip install huggingface_hub") from e

    logger.info("✅ Hugging Face (Native Client) initialized: %s", settings.huggingface_model)
    return llm, {"provider": "huggingface", "model": settings.huggingface_model, "sdk": "huggingface_hub"}


CODE_FENCE_PATTERN = re.compile(r'^```(?:json)?\s*(.*?)\s*```$', re.DOTALL)


def extract_text(response: Any) -> str:
    """
    Pull the completion text out of an LLM response.

    Content-block lists are joined, and a single surrounding markdown code
    fence is removed so the caller sees the bare payload.
    """
    content = getattr(response, 'content', response)
    if isinstance(content, list):
        parts = []
        for block in content:
            if isinstance(block, dict) and "text" in block:
                parts.append(block["text"])
            elif isinstance(block, str):
                parts.append(block)
        content = "".join(parts)

    text = str(content).strip()
    match = CODE_FENCE_PATTERN.match(text)
    if match:
        text = match.group(1)
    return text
