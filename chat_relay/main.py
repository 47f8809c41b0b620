# chat_relay/main.py
import os
import time
import typer
import uvicorn
import httpx
import json
import logging
from typing import Optional, Dict, Any
from fastapi import APIRouter, FastAPI, Depends, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager

from chat_relay.core import config, security
from chat_relay.core.config import RelayConfig, Settings, build_relay_config
from chat_relay.core.exceptions import RelayError
from chat_relay.core.forwarder import UpstreamInvoker, create_upstream_client
from chat_relay.core.streaming import OllamaStreamFramer, RelayStreamingResponse, passthrough_framer
from chat_relay.core.translator import RequestTranslator, ResponseTranslator
from chat_relay.models.api import ModelCard, ModelList

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(' ' * 5 + os.path.basename(__file__))

APP_VERSION = "0.1.0"

router = APIRouter()


async def relay_error_handler(request: Request, exc: RelayError) -> JSONResponse:
    logger.warning(f"{request.method} {request.url.path} -> {exc.status_code} {exc.error_type}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": {"message": exc.message, "type": exc.error_type}},
    )


# --- API Endpoints ---
@router.get("/v1/models", response_model=ModelList, tags=["Relay"])
async def list_models(request: Request, relay_key: str = Depends(security.validate_relay_key)):
    """Lists the model aliases this relay answers for."""
    relay_config: RelayConfig = request.app.state.relay_config
    created = int(time.time())
    return ModelList(data=[
        ModelCard(id=alias, created=created, owned_by=relay_config.profile.owned_by)
        for alias in relay_config.model_aliases
    ])


@router.post(
    "/v1/chat/completions",
    summary="Relay Chat Completion Request",
    description=(
        "Accepts an OpenAI-compatible chat completion request, rewrites it for the configured "
        "upstream provider and relays the answer back, either as one JSON document or as a live "
        "`text/event-stream`. Upstream errors are passed through verbatim."
    ),
    tags=["Relay"]
)
async def relay_chat_completion(
    request: Request,
    relay_key: str = Depends(security.validate_relay_key) # Authenticate the user of *this* service
):
    state = request.app.state
    http_client: Optional[httpx.AsyncClient] = getattr(state, "http_client", None)
    if not http_client:
        logger.error("HTTP client not initialized during request.")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Service unavailable: HTTP client not initialized.")

    relay_config: RelayConfig = state.relay_config
    body = await request.body()
    upstream_request, original_model = state.request_translator.translate(body)

    invoker = UpstreamInvoker(relay_config, http_client)
    result = await invoker.send(upstream_request, request.headers)

    if result.is_error:
        # Native upstream error shape, status and body bytes untouched
        response = Response(content=result.body, status_code=result.status_code)
        response.raw_headers.extend(
            (name.lower().encode("latin-1"), value.encode("latin-1")) for name, value in result.headers
        )
        return response

    if upstream_request.stream:
        upstream = result.response
        if relay_config.profile.wire_format == "ollama":
            framer = OllamaStreamFramer(original_model)
        else:
            framer = passthrough_framer
        logger.info(f"Starting streaming response handling with model: {original_model}")
        return RelayStreamingResponse(
            upstream.aiter_lines(),
            close_upstream=upstream.aclose,
            status_code=result.status_code,
            heartbeat_interval=relay_config.heartbeat_interval,
            framer=framer,
        )

    translated = state.response_translator.translate(result.body, original_model)
    logger.info(f"Relayed non-streaming response for model {original_model}.")
    return JSONResponse(content=translated, status_code=result.status_code)


def create_app(relay_config: Optional[RelayConfig] = None, client: Optional[httpx.AsyncClient] = None) -> FastAPI:
    """
    Builds the relay application.

    `relay_config` is built from the environment when omitted. An injected
    `client` is used as-is and left open on shutdown.
    """
    if relay_config is None:
        relay_config = build_relay_config(Settings())

    # --- Async Lifecycle for HTTPX client ---
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owns_client = client is None
        app.state.http_client = client or create_upstream_client(relay_config)
        logger.info(f"HTTPX Client ready (timeout: {app.state.http_client.timeout}).")
        yield
        if owns_client:
            await app.state.http_client.aclose()
            logger.info("HTTPX Client closed.")

    app = FastAPI(
        title="Chat Relay",
        description="Relays OpenAI-style chat completion requests to a provider with its own schema, including live streams.",
        version=APP_VERSION,
        lifespan=lifespan,
    )
    app.state.relay_config = relay_config
    app.state.request_translator = RequestTranslator(relay_config)
    app.state.response_translator = ResponseTranslator(relay_config)
    app.add_exception_handler(RelayError, relay_error_handler)
    app.include_router(router)
    return app


# --- Typer CLI App ---
cli_app = typer.Typer()


@cli_app.command()
def generate_key(length: int = typer.Option(32, help="Length of the random part of the key.")):
    """Generates a new secure relay API key and saves it to the keys file."""
    new_key = security.generate_api_key(length)
    keys_path = config.KEYS_FILE
    try:
        keys_path.parent.mkdir(parents=True, exist_ok=True)
        # One key per line; the settings loader skips blanks and '#' comments
        with keys_path.open("a") as f:
            f.write(f"{new_key}\n")
    except OSError as e:
        print(f"\n--- Could Not Save Relay Key ---")
        print(f"Writing {keys_path} failed: {e}")
        print(f"Key (add it to RELAY_API_KEYS yourself): {new_key}")
        raise typer.Exit(code=1)

    print(f"\n--- New Relay API Key ---\n")
    print(new_key)
    print(f"\nSaved to {keys_path}. Clients send it as 'Authorization: Bearer <key>'.")
    print("Restart the server to pick it up.\n")


@cli_app.command()
def run_server(
    host: str = typer.Option("127.0.0.1", help="Host to bind the server to."),
    port: int = typer.Option(9000, help="Port to run the server on."),
    provider: Optional[str] = typer.Option(None, "--provider", "-p", help=f"Upstream provider ({', '.join(config.PROVIDER_PROFILES)}). Overrides RELAY_PROVIDER."),
    reload: bool = typer.Option(False, "--reload", help="Enable auto-reloading for development."),
    log_level: str = typer.Option("info", help="Log level (e.g., debug, info, warning, error).")
):
    """Runs the relay web server."""
    if provider:
        # The app factory reads its settings from the environment
        os.environ["RELAY_PROVIDER"] = provider
    logging.getLogger().setLevel(log_level.upper())

    try:
        relay_config = build_relay_config(Settings())
    except ValueError as e:
        print(f"Configuration error: {e}")
        raise typer.Exit(code=1)

    print(f"--- Chat Relay Server (v{APP_VERSION}) ---")
    print(f"Starting server on http://{host}:{port}")
    print(f"Provider: {relay_config.profile.name} -> {relay_config.target_url}")
    print(f"Upstream Model: {relay_config.upstream_model}")
    print(f"Served Aliases: {', '.join(relay_config.model_aliases)}")
    print(f"Relay Keys Loaded: {len(relay_config.allowed_relay_keys)}")
    print(f"Heartbeat Interval: {relay_config.heartbeat_interval}s")
    print(f"Log Level: {log_level.upper()}")
    print(f"Auto-reload: {'Enabled' if reload else 'Disabled'}")
    print("-" * 40)

    if not relay_config.allowed_relay_keys:
        print("\nWARNING: No relay API keys loaded. Set RELAY_API_KEYS or run 'python -m chat_relay.main generate-key'.")
    if not relay_config.upstream_api_key and not relay_config.profile.auth_optional:
        print(f"\nWARNING: No API key configured for provider '{relay_config.profile.name}'. Upstream calls will fail.")

    uvicorn.run(
        "chat_relay.main:create_app",
        factory=True,
        host=host,
        port=port,
        reload=reload,
        log_level=log_level.lower(),
        lifespan="on" # Ensure lifespan events are handled
    )


@cli_app.command()
def call(
    prompt: str = typer.Argument(..., help="The user prompt."),
    model: str = typer.Option("gpt-4o", "--model", "-m", help="Model alias to request."),
    key: Optional[str] = typer.Option(None, "--key", "-k", help="Your relay API key. Can also use RELAY_KEY env var.", envvar="RELAY_KEY"),
    server: str = typer.Option("http://127.0.0.1:9000", help="URL of the running relay server."),
    stream: bool = typer.Option(False, "--stream", help="Request a streamed response and print events as they arrive."),
    temperature: Optional[float] = typer.Option(None, "--temp", "-t", help="Temperature for sampling."),
    max_tokens: Optional[int] = typer.Option(None, "--max-tok", help="Max tokens to generate."),
    system_prompt: Optional[str] = typer.Option(None, "--system", "-s", help="Optional system prompt."),
):
    """Sends a chat request through the relay (for testing)."""
    if not key:
        print("Error: Relay API key is required. Use --key or set the RELAY_KEY environment variable.")
        raise typer.Exit(code=1)

    api_endpoint = f"{server.rstrip('/')}/v1/chat/completions"
    headers = {
        "Authorization": f"Bearer {key}",
        "Content-Type": "application/json",
    }

    messages = []
    if system_prompt:
        messages.append({"role": "system", "content": system_prompt})
    messages.append({"role": "user", "content": prompt})

    payload: Dict[str, Any] = {"model": model, "messages": messages, "stream": stream}
    # Add optional parameters only if they are provided
    if temperature is not None:
        payload["temperature"] = temperature
    if max_tokens is not None:
        payload["max_tokens"] = max_tokens

    print(f"--- Sending Request ---")
    print(f"API Endpoint: {api_endpoint}")
    print(f"Payload Preview: {json.dumps(payload, indent=2)}")
    print(f"-----------------------")

    timeout = httpx.Timeout(10.0, read=None if stream else 310.0)
    try:
        with httpx.Client(timeout=timeout) as client:
            if stream:
                with client.stream("POST", api_endpoint, headers=headers, json=payload) as response:
                    print(f"\n--- Stream (Status: {response.status_code}) ---")
                    for line in response.iter_lines():
                        if line:
                            print(line)
                return

            response = client.post(api_endpoint, headers=headers, json=payload)
            print(f"\n--- Response (Status: {response.status_code}) ---")
            try:
                print(json.dumps(response.json(), indent=2))
            except json.JSONDecodeError:
                print(response.text) # Print raw text if not JSON
    except httpx.RequestError as e:
        print(f"\n--- Request Error ---")
        print(f"Could not connect to the relay server at {server}. Is it running?")
        print(f"Error details: {type(e).__name__} - {e}")


if __name__ == "__main__":
    # This allows running CLI commands like: python -m chat_relay.main generate-key
    cli_app()
