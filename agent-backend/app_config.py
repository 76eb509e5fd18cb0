import json
import logging
import os
from typing import Any

import agentscope
from agentscope.model import ChatModelBase
from dotenv import load_dotenv
from pydantic import BaseModel

logger = logging.getLogger("agent-backend")

_DEFAULT_ONEINCH_BASE_URL = "https://api.1inch.dev"
_DEFAULT_PRIVY_USER_URL = "https://auth.privy.io/api/v1/users/me"
_DEFAULT_DB_PATH = "limitless.db"


def init_agents():
    load_dotenv()
    agentscope.init(
        project=os.getenv("LIMITLESS_PROJECT", "limitless"),
        name=os.getenv("LIMITLESS_RUN_NAME", "agent-backend"),
        logging_path=os.getenv("LIMITLESS_LOG_PATH"),
        logging_level=os.getenv("LIMITLESS_LOG_LEVEL", "INFO"),
        studio_url=os.getenv("LIMITLESS_STUDIO_URL"),
        tracing_url=os.getenv("LIMITLESS_TRACING_URL"),
    )


class ModelBundle(BaseModel):
    model: ChatModelBase
    formatter: Any

    class Config:
        arbitrary_types_allowed = True


def _env_flag(name: str, default: str = "0") -> bool:
    return os.getenv(name, default).strip().lower() not in {"", "0", "false", "no"}


def startup_disabled() -> bool:
    return os.getenv("LIMITLESS_DISABLE_STARTUP", "").strip() == "1"


def load_oneinch_config() -> dict[str, Any]:
    return {
        "api_key": os.getenv("ONEINCH_API_KEY", "").strip(),
        "base_url": os.getenv("LIMITLESS_ONEINCH_BASE_URL", _DEFAULT_ONEINCH_BASE_URL).strip(),
        "timeout_s": float(os.getenv("LIMITLESS_ONEINCH_TIMEOUT_SECONDS", "10")),
    }


def load_ai_config() -> dict[str, Any]:
    return {
        "history_limit": int(os.getenv("LIMITLESS_HISTORY_LIMIT", "5")),
        "llm_timeout_s": float(os.getenv("LIMITLESS_LLM_TIMEOUT_SECONDS", "60")),
        "tool_timeout_s": float(os.getenv("LIMITLESS_TOOL_TIMEOUT_SECONDS", "20")),
    }


def load_db_config() -> dict[str, str]:
    return {
        "path": os.getenv("LIMITLESS_DB_PATH", _DEFAULT_DB_PATH).strip(),
    }


def load_auth_config() -> dict[str, Any]:
    return {
        "app_id": os.getenv("PRIVY_APP_ID", "").strip(),
        "user_url": os.getenv("LIMITLESS_PRIVY_USER_URL", _DEFAULT_PRIVY_USER_URL).strip(),
        "timeout_s": float(os.getenv("LIMITLESS_PRIVY_TIMEOUT_SECONDS", "10")),
    }


def load_swap_config() -> dict[str, Any]:
    return {
        "poll_interval_s": float(os.getenv("LIMITLESS_SWAP_POLL_SECONDS", "5")),
        "max_attempts": int(os.getenv("LIMITLESS_SWAP_MAX_ATTEMPTS", "60")),
    }


def _load_json_file(path: str) -> dict[str, Any]:
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def _model_temperature(file_cfg: dict[str, Any]) -> float:
    value = file_cfg.get("temperature")
    if value is None:
        value = os.getenv("LIMITLESS_MODEL_TEMPERATURE", "0.7")
    return float(value)


def load_model_bundle() -> ModelBundle:
    config_path = os.getenv("LIMITLESS_MODEL_CONFIG_PATH")
    file_cfg: dict[str, Any] = {}
    if config_path:
        file_cfg = _load_json_file(config_path)

    provider = str(file_cfg.get("provider") or os.getenv("LIMITLESS_MODEL_PROVIDER", "openai")).strip().lower()
    model_name = str(file_cfg.get("model_name") or os.getenv("LIMITLESS_MODEL_NAME") or "").strip()
    if not model_name and provider == "openai":
        model_name = "gpt-4o-mini"
    if not model_name and provider == "deepseek":
        model_name = "deepseek-chat"
    if not model_name:
        raise RuntimeError("Missing required env: LIMITLESS_MODEL_NAME")

    temperature = _model_temperature(file_cfg)
    upstream_timeout_s = float(os.getenv("LIMITLESS_UPSTREAM_TIMEOUT_SECONDS", "60"))
    logger.info("loading model provider=%s model=%s", provider, model_name)

    if provider == "openai":
        if not os.getenv("OPENAI_API_KEY"):
            raise RuntimeError("Missing required env: OPENAI_API_KEY")

        try:
            from agentscope.formatter import OpenAIChatFormatter
            from agentscope.model import OpenAIChatModel
        except Exception as e:
            raise RuntimeError(
                "OpenAI provider requires AgentScope OpenAI dependencies. "
                "Install with agentscope[full] or install the OpenAI client dependencies."
            ) from e

        return ModelBundle(
            model=OpenAIChatModel(
                model_name=model_name,
                api_key=os.getenv("OPENAI_API_KEY"),
                stream=_env_flag("LIMITLESS_UPSTREAM_STREAMING"),
                client_args={"timeout": upstream_timeout_s},
                generate_kwargs={"temperature": temperature},
            ),
            formatter=OpenAIChatFormatter(),
        )

    if provider == "deepseek":
        if not os.getenv("DEEPSEEK_API_KEY"):
            raise RuntimeError("Missing required env: DEEPSEEK_API_KEY")

        deepseek_base_url = os.getenv("DEEPSEEK_BASE_URL", "https://api.deepseek.com/v1").strip()

        try:
            from agentscope.formatter import OpenAIChatFormatter
            from agentscope.model import OpenAIChatModel
        except Exception as e:
            raise RuntimeError(
                "DeepSeek provider requires AgentScope OpenAI-compatible dependencies. "
                "Install with agentscope[full] or install the OpenAI client dependencies."
            ) from e

        return ModelBundle(
            model=OpenAIChatModel(
                model_name=model_name,
                api_key=os.getenv("DEEPSEEK_API_KEY"),
                stream=_env_flag("LIMITLESS_UPSTREAM_STREAMING"),
                client_args={"base_url": deepseek_base_url, "timeout": upstream_timeout_s},
                generate_kwargs={"temperature": temperature},
            ),
            formatter=OpenAIChatFormatter(),
        )

    if provider == "dashscope":
        if not os.getenv("DASHSCOPE_API_KEY"):
            raise RuntimeError("Missing required env: DASHSCOPE_API_KEY")

        try:
            from agentscope.formatter import DashScopeChatFormatter
            from agentscope.model import DashScopeChatModel
        except Exception as e:
            raise RuntimeError(
                "DashScope provider requires AgentScope DashScope dependencies. "
                "Install with agentscope[full] or install dashscope-related dependencies."
            ) from e

        return ModelBundle(
            model=DashScopeChatModel(model_name=model_name, api_key=os.getenv("DASHSCOPE_API_KEY"), stream=False),
            formatter=DashScopeChatFormatter(),
        )

    if provider == "anthropic":
        if not os.getenv("ANTHROPIC_API_KEY"):
            raise RuntimeError("Missing required env: ANTHROPIC_API_KEY")

        try:
            from agentscope.formatter import AnthropicChatFormatter
            from agentscope.model import AnthropicChatModel
        except Exception as e:
            raise RuntimeError(
                "Anthropic provider requires AgentScope Anthropic dependencies. "
                "Install with agentscope[full] or install anthropic-related dependencies."
            ) from e

        return ModelBundle(
            model=AnthropicChatModel(model_name=model_name, api_key=os.getenv("ANTHROPIC_API_KEY"), stream=False),
            formatter=AnthropicChatFormatter(),
        )

    raise RuntimeError(f"Unsupported LIMITLESS_MODEL_PROVIDER: {provider}")
