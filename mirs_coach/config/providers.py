"""
LLM Provider Configuration for the Intention Detector and the Feedback Coach.

Simplified structure matching .env format:
- [AGENT]_PROVIDER: "openrouter" or "openai"
- [AGENT]_API_KEY: API key for the selected provider
- [AGENT]_MODEL: Model identifier
- [AGENT]_TEMPERATURE: (optional) Temperature setting

Agents: "intention" (category fallback) and "coach" (dialogic feedback replies).
"""

import os
import logging
from enum import Enum
from dataclasses import dataclass
from dotenv import load_dotenv

load_dotenv()

AGENT_NAMES = ["intention", "coach"]

# Pre-configure environment variables ONCE for OpenRouter and OpenAI
# Find the first valid API key for each provider type
openrouter_key_set = False
openai_key_set = False

for agent in AGENT_NAMES:
    agent_upper = agent.upper()
    provider = os.getenv(f"{agent_upper}_PROVIDER", "openai").lower()
    api_key = os.getenv(f"{agent_upper}_API_KEY")

    if api_key and not api_key.startswith("sk-or-your"):  # Skip placeholder keys
        if provider == "openrouter" and not openrouter_key_set:
            os.environ["OPENROUTER_API_KEY"] = api_key
            openrouter_key_set = True
        elif provider == "openai" and not openai_key_set:
            os.environ["OPENAI_API_KEY"] = api_key
            openai_key_set = True

logger = logging.getLogger(__name__)


class Provider(str, Enum):
    """Available LLM providers."""
    OPENROUTER = "openrouter"
    OPENAI = "openai"


@dataclass
class AgentModelConfig:
    """Configuration for a single agent's LLM."""

    agent_name: str
    provider: Provider
    model_name: str
    api_key: str
    temperature: float
    base_url: str


class ProviderManager:
    """
    Manages LLM provider configuration for the intention and coach agents.

    Loads from simplified .env format:
    - COACH_PROVIDER=openai
    - COACH_API_KEY=sk-...
    - COACH_MODEL=gpt-4.1-2025-04-14
    - COACH_TEMPERATURE=0.7 (optional)
    """

    # Intention fallback must be deterministic; coaching replies get some variety
    DEFAULT_TEMPERATURES = {
        "intention": 0.0,
        "coach": 0.7,
    }

    DEFAULT_MODELS = {
        Provider.OPENROUTER: "openai/gpt-4.1",
        Provider.OPENAI: "gpt-4.1-2025-04-14",
    }

    PROVIDER_BASE_URLS = {
        Provider.OPENROUTER: "https://openrouter.ai/api/v1",
        Provider.OPENAI: "https://api.openai.com/v1"
    }

    def __init__(self):
        self._configs = {}

    def get_temperature(self, agent_name: str) -> float:
        """
        Get the sampling temperature for an agent without touching credentials.

        Args:
            agent_name: "intention" or "coach"

        Returns:
            [AGENT]_TEMPERATURE from the environment, or the agent default
        """
        temperature_str = os.getenv(f"{agent_name.upper()}_TEMPERATURE")
        if temperature_str:
            try:
                return float(temperature_str)
            except ValueError:
                raise ValueError(
                    f"Invalid {agent_name.upper()}_TEMPERATURE: '{temperature_str}'. "
                    f"Must be a number"
                )
        return self.DEFAULT_TEMPERATURES.get(agent_name, 0.0)

    def get_agent_config(self, agent_name: str) -> AgentModelConfig:
        """
        Get LLM configuration for a specific agent.

        Args:
            agent_name: "intention" or "coach"

        Returns:
            AgentModelConfig with provider settings

        Raises:
            ValueError: If configuration is invalid or missing
        """
        if agent_name in self._configs:
            return self._configs[agent_name]

        agent_upper = agent_name.upper()

        provider_str = os.getenv(f"{agent_upper}_PROVIDER", "openai").lower()

        try:
            provider = Provider(provider_str)
        except ValueError:
            raise ValueError(
                f"Invalid {agent_upper}_PROVIDER: '{provider_str}'. "
                f"Must be 'openrouter' or 'openai'"
            )

        api_key = os.getenv(f"{agent_upper}_API_KEY")
        if not api_key:
            raise ValueError(
                f"Missing {agent_upper}_API_KEY in .env file. "
                f"Get key at: https://openrouter.ai/ or https://platform.openai.com/"
            )

        model_name = os.getenv(f"{agent_upper}_MODEL") or self.DEFAULT_MODELS[provider]

        config = AgentModelConfig(
            agent_name=agent_name,
            provider=provider,
            model_name=model_name,
            api_key=api_key,
            temperature=self.get_temperature(agent_name),
            base_url=self.PROVIDER_BASE_URLS[provider]
        )

        logger.info(
            f"Configured {agent_name}: provider={provider.value}, "
            f"model={model_name}, temperature={config.temperature}"
        )

        self._configs[agent_name] = config
        return config

    def get_model(self, agent_name: str):
        """
        Get initialized LLM model instance for an agent.

        Args:
            agent_name: "intention" or "coach"

        Returns:
            Pydantic AI compatible model instance
        """
        config = self.get_agent_config(agent_name)
        return self._create_model_instance(config)

    @staticmethod
    def _create_model_instance(config: AgentModelConfig):
        """
        Create Pydantic AI model instance from config.

        API keys are picked up from OPENROUTER_API_KEY / OPENAI_API_KEY,
        which the module pre-configures from the per-agent keys.
        """
        from pydantic_ai.models.openai import OpenAIChatModel

        return OpenAIChatModel(
            config.model_name,
            provider=config.provider.value
        )

    def get_model_info(self, agent_name: str) -> dict:
        """
        Get human-readable info about agent's configured model.

        Args:
            agent_name: "intention" or "coach"

        Returns:
            Dictionary with model information
        """
        config = self.get_agent_config(agent_name)
        return {
            "agent": agent_name,
            "provider": config.provider.value,
            "model": config.model_name,
            "temperature": config.temperature,
            "base_url": config.base_url
        }

    def validate_all_agents(self) -> dict:
        """
        Validate configuration for all agents.

        Returns:
            Dictionary with validation results
        """
        results = {}

        for agent in AGENT_NAMES:
            try:
                config = self.get_agent_config(agent)
                results[agent] = {
                    "status": "valid",
                    "provider": config.provider.value,
                    "model": config.model_name,
                    "error": None
                }
            except Exception as e:
                results[agent] = {
                    "status": "invalid",
                    "provider": None,
                    "model": None,
                    "error": str(e)
                }

        return results


# Global instance - use throughout your application
provider_manager = ProviderManager()
