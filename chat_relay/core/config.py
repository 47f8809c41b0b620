# chat_relay/core/config.py
import os
import logging
from typing import List, Optional, Dict, Tuple, Literal
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import BaseModel, ConfigDict, Field, model_validator
from dotenv import load_dotenv
from pathlib import Path

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(' ' * 5 + os.path.basename(__file__))

# Load .env file into environment variables BEFORE loading settings
env_path = Path(__file__).parent.parent.parent / '.env'
load_dotenv(dotenv_path=env_path, override=False)

KEYS_FILE = Path(__file__).parent.parent.parent / "keys" / "relay_api_keys"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file='.env', env_file_encoding='utf-8', extra='ignore', populate_by_name=True)

    # Which upstream this process relays to (see PROVIDER_PROFILES)
    provider: str = Field("deepseek", alias='RELAY_PROVIDER')

    # Upstream credentials
    deepseek_api_key: Optional[str] = Field(None, alias='DEEPSEEK_API_KEY')
    openrouter_api_key: Optional[str] = Field(None, alias='OPENROUTER_API_KEY')
    ollama_api_key: Optional[str] = Field(None, alias='OLLAMA_API_KEY')

    # Optional Base URLs
    deepseek_base_url: str = Field("https://api.deepseek.com", alias='DEEPSEEK_BASE_URL')
    deepseek_beta_base_url: str = Field("https://api.deepseek.com/beta", alias='DEEPSEEK_BETA_BASE_URL')
    openrouter_base_url: str = Field("https://openrouter.ai/api/v1", alias='OPENROUTER_BASE_URL')
    ollama_base_url: str = Field("http://localhost:11434/api", alias='OLLAMA_API_ENDPOINT')

    # Model selection
    upstream_model: Optional[str] = Field(None, alias='UPSTREAM_MODEL')
    ollama_default_model: Optional[str] = Field(None, alias='DEFAULT_MODEL')
    model_aliases_str: str = Field("gpt-4o", alias='MODEL_ALIASES')

    # Optional default-injection policy (absent values only)
    default_temperature: Optional[float] = Field(None, alias='DEFAULT_TEMPERATURE')
    default_max_tokens: Optional[int] = Field(None, alias='DEFAULT_MAX_TOKENS')

    # Streaming / transport
    heartbeat_interval: float = Field(15.0, gt=0, alias='HEARTBEAT_INTERVAL')
    upstream_connect_timeout: float = Field(10.0, alias='UPSTREAM_CONNECT_TIMEOUT')
    upstream_read_timeout: float = Field(300.0, alias='UPSTREAM_READ_TIMEOUT')

    # Inbound keys: comma list from the environment plus the keys file
    relay_api_keys_str: Optional[str] = Field(None, alias='RELAY_API_KEYS')
    allowed_relay_keys: List[str] = []

    @model_validator(mode='after')
    def process_settings(self) -> 'Settings':
        keys: List[str] = []
        if self.relay_api_keys_str:
            keys.extend(k.strip() for k in self.relay_api_keys_str.split(',') if k.strip())

        if KEYS_FILE.exists():
            try:
                with KEYS_FILE.open("r") as f:
                    # Filter empty lines and comments starting with #
                    keys.extend(
                        line.strip() for line in f if line.strip() and not line.strip().startswith('#')
                    )
            except OSError as e:
                logger.error(f"Error reading relay keys file '{KEYS_FILE}': {e}")
        self.allowed_relay_keys = list(dict.fromkeys(keys))

        self.provider = self.provider.strip().lower()
        if not self.allowed_relay_keys:
            logger.warning("No relay API keys loaded. Set RELAY_API_KEYS or run 'generate-key'. Every request will be rejected.")
        return self

    @property
    def model_aliases(self) -> List[str]:
        return [a.strip() for a in self.model_aliases_str.split(',') if a.strip()]


class ProviderProfile(BaseModel):
    """Static description of one upstream: everything that differs between providers."""
    model_config = ConfigDict(frozen=True)

    name: str
    endpoint: str
    auth_header: str = "Authorization"
    auth_scheme: Optional[str] = "Bearer"
    auth_optional: bool = False
    required_headers: Dict[str, str] = {}
    default_model: str
    owned_by: str
    wire_format: Literal["openai", "ollama"] = "openai"
    # What a structured {"type": "function", ...} tool_choice becomes upstream.
    # None means the upstream takes no tool_choice at all and the field is dropped.
    forced_choice_fallback: Optional[Literal["auto", "none"]] = "auto"
    supports_tool_choice: bool = True


PROVIDER_PROFILES: Dict[str, ProviderProfile] = {
    "deepseek": ProviderProfile(
        name="deepseek",
        endpoint="/v1/chat/completions",
        default_model="deepseek-chat",
        owned_by="deepseek",
    ),
    "deepseek-coder": ProviderProfile(
        name="deepseek-coder",
        endpoint="/v1/chat/completions",
        default_model="deepseek-coder",
        owned_by="deepseek",
    ),
    "openrouter": ProviderProfile(
        name="openrouter",
        endpoint="/chat/completions",
        required_headers={
            "HTTP-Referer": "https://github.com/danilofalcao/cursor-deepseek",
            "X-Title": "Cursor DeepSeek",
        },
        default_model="deepseek/deepseek-chat",
        owned_by="openrouter",
    ),
    "ollama": ProviderProfile(
        name="ollama",
        endpoint="/chat",
        auth_optional=True, # Auth is typically optional for local Ollama
        default_model="llama2",
        owned_by="ollama",
        wire_format="ollama",
        forced_choice_fallback=None,
        supports_tool_choice=False,
    ),
}


class RelayConfig(BaseModel):
    """
    Immutable configuration for one relay process.

    Built once by `build_relay_config` at startup and handed to the translator
    and invoker constructors.
    """
    model_config = ConfigDict(frozen=True)

    profile: ProviderProfile
    base_url: str
    upstream_api_key: Optional[str] = None
    upstream_model: str
    model_aliases: Tuple[str, ...]
    allowed_relay_keys: Tuple[str, ...] = ()
    default_temperature: Optional[float] = None
    default_max_tokens: Optional[int] = None
    heartbeat_interval: float = Field(15.0, gt=0)
    connect_timeout: float = 10.0
    read_timeout: float = 300.0

    @property
    def target_url(self) -> str:
        return f"{self.base_url.rstrip('/')}{self.profile.endpoint}"


def get_provider_profile(provider_name: str) -> ProviderProfile:
    profile = PROVIDER_PROFILES.get(provider_name.lower())
    if profile is None:
        raise ValueError(f"Unknown provider '{provider_name}'. Expected one of: {', '.join(PROVIDER_PROFILES)}")
    return profile


def build_relay_config(settings: Settings) -> RelayConfig:
    """Resolves the provider profile, credential, model and aliases into one frozen value."""
    profile = get_provider_profile(settings.provider)

    api_keys = {
        "deepseek": settings.deepseek_api_key,
        "deepseek-coder": settings.deepseek_api_key,
        "openrouter": settings.openrouter_api_key,
        "ollama": settings.ollama_api_key,
    }
    base_urls = {
        "deepseek": settings.deepseek_base_url,
        "deepseek-coder": settings.deepseek_beta_base_url,
        "openrouter": settings.openrouter_base_url,
        "ollama": settings.ollama_base_url,
    }
    upstream_api_key = api_keys[profile.name]
    base_url = base_urls[profile.name]

    if not upstream_api_key and not profile.auth_optional:
        logger.warning(f"No API key configured for provider '{profile.name}'. Upstream calls will be rejected.")
    if not base_url.startswith(("http://", "https://")):
        raise ValueError(f"Invalid base URL for provider '{profile.name}': {base_url}")

    upstream_model = settings.upstream_model or profile.default_model
    if profile.name == "ollama" and settings.ollama_default_model and not settings.upstream_model:
        upstream_model = settings.ollama_default_model

    aliases = tuple(settings.model_aliases)
    if not aliases:
        raise ValueError("MODEL_ALIASES must name at least one model alias.")

    if upstream_api_key and upstream_api_key in settings.allowed_relay_keys:
        raise ValueError("A relay API key must never be the same value as the upstream credential.")

    config = RelayConfig(
        profile=profile,
        base_url=base_url,
        upstream_api_key=upstream_api_key,
        upstream_model=upstream_model,
        model_aliases=aliases,
        allowed_relay_keys=tuple(settings.allowed_relay_keys),
        default_temperature=settings.default_temperature,
        default_max_tokens=settings.default_max_tokens,
        heartbeat_interval=settings.heartbeat_interval,
        connect_timeout=settings.upstream_connect_timeout,
        read_timeout=settings.upstream_read_timeout,
    )
    logger.info(f"Relay configured: provider={profile.name}, endpoint={config.target_url}, model={upstream_model}, aliases={list(aliases)}")
    return config
