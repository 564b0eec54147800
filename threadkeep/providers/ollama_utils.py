"""
Helpers shared by the Ollama embedding and summarization providers.
"""

import json
import logging
import os

import requests

logger = logging.getLogger(__name__)

DEFAULT_OLLAMA_URL = "http://localhost:11434"
PULL_TIMEOUT = 600


def ollama_base_url(base_url: str | None = None) -> str:
    """Explicit URL, else OLLAMA_HOST, else localhost. No trailing slash."""
    url = base_url or os.environ.get("OLLAMA_HOST") or DEFAULT_OLLAMA_URL
    if not url.startswith(("http://", "https://")):
        url = f"http://{url}"
    return url.rstrip("/")


def _installed_models(base_url: str) -> set[str]:
    try:
        resp = requests.get(f"{base_url}/api/tags", timeout=5)
        resp.raise_for_status()
    except requests.RequestException as e:
        raise RuntimeError(
            f"Ollama server at {base_url} did not answer ({e}). "
            "Start it with: ollama serve"
        ) from e
    return {entry["name"] for entry in resp.json().get("models", [])}


def _has_model(installed: set[str], model: str) -> bool:
    # Tags are reported as "name:tag"; a bare name means ":latest"
    name = model.split(":", 1)[0]
    return bool({model, name, f"{model}:latest", f"{name}:latest"} & installed)


def ollama_ensure_model(base_url: str, model: str) -> None:
    """
    Make sure ``model`` exists on the server, pulling it on first use.

    Raises:
        RuntimeError: Server unreachable or the pull reported an error
    """
    if _has_model(_installed_models(base_url), model):
        return

    logger.warning("Ollama model %s not found locally, pulling it", model)
    try:
        resp = requests.post(
            f"{base_url}/api/pull",
            json={"name": model, "stream": True},
            stream=True,
            timeout=PULL_TIMEOUT,
        )
        resp.raise_for_status()
    except requests.RequestException as e:
        raise RuntimeError(f"Could not pull Ollama model {model!r}: {e}") from e

    # The pull streams one JSON status object per line
    for raw in resp.iter_lines():
        if not raw:
            continue
        try:
            status = json.loads(raw)
        except json.JSONDecodeError:
            continue
        if "error" in status:
            raise RuntimeError(f"Ollama could not pull {model!r}: {status['error']}")
    logger.info("Pulled Ollama model %s", model)
