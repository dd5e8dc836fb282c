import base64
import logging
import mimetypes
import shlex
import subprocess
from datetime import datetime

import anthropic
import httpx
import ollama

from relayclaw.core.prompts import get_system_prompt
from relayclaw.errors import ConfigError, GenerationError, GenerationTimeout

logger = logging.getLogger(__name__)


def is_image(path):
    return (mimetypes.guess_type(path)[0] or "").startswith("image/")


class OllamaProvider:
    """Local model through the Ollama server. Images are passed by path."""

    name = "ollama"

    def __init__(self, model, host, timeout, system_prompt):
        self.model = model
        self.timeout = timeout
        self.system_prompt = system_prompt
        self.client = ollama.Client(host=host, timeout=timeout)

    def generate(self, prompt, attachments=()):
        user = {"role": "user", "content": prompt}
        images = [p for p in attachments if is_image(p)]
        if images:
            user["images"] = images
        messages = [{"role": "system", "content": self.system_prompt}, user]
        try:
            response = self.client.chat(model=self.model, messages=messages)
        except httpx.TimeoutException:
            raise GenerationTimeout(self.timeout) from None
        except (ollama.ResponseError, httpx.HTTPError, ConnectionError) as e:
            raise GenerationError(f"ollama: {e}") from e
        return response["message"]["content"]


class AnthropicProvider:
    name = "anthropic"

    def __init__(self, model, api_key, timeout, system_prompt, max_tokens=1024):
        if not api_key:
            raise ConfigError("ANTHROPIC_API_KEY is required for LLM_PROVIDER=anthropic")
        self.model = model
        self.timeout = timeout
        self.system_prompt = system_prompt
        self.max_tokens = max_tokens
        self.client = anthropic.Anthropic(api_key=api_key, timeout=timeout, max_retries=0)

    def _image_block(self, path):
        media_type = mimetypes.guess_type(path)[0] or "image/png"
        try:
            with open(path, "rb") as fh:
                data = base64.standard_b64encode(fh.read()).decode("ascii")
        except OSError as e:
            raise GenerationError(f"anthropic: cannot read attachment {path}: {e}") from e
        return {"type": "image", "source": {"type": "base64", "media_type": media_type, "data": data}}

    def generate(self, prompt, attachments=()):
        content = [self._image_block(p) for p in attachments if is_image(p)]
        content.append({"type": "text", "text": prompt})
        try:
            response = self.client.messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                system=self.system_prompt,
                messages=[{"role": "user", "content": content}],
            )
        except anthropic.APITimeoutError:
            raise GenerationTimeout(self.timeout) from None
        except anthropic.APIError as e:
            raise GenerationError(f"anthropic: {e}") from e
        return "".join(block.text for block in response.content if block.type == "text")


class CliProvider:
    """Any command that reads a prompt on stdin and prints the answer."""

    name = "cli"

    def __init__(self, command, timeout, system_prompt):
        self.argv = shlex.split(command)
        if not self.argv:
            raise ConfigError("LLM_CLI_COMMAND is empty")
        self.timeout = timeout
        self.system_prompt = system_prompt

    def generate(self, prompt, attachments=()):
        text = f"{self.system_prompt}\n\n{prompt}"
        if attachments:
            text += "\n\nFiles to read:\n" + "\n".join(attachments)
        try:
            result = subprocess.run(
                self.argv, input=text, capture_output=True, encoding="utf-8", errors="replace", timeout=self.timeout,
            )
        except subprocess.TimeoutExpired:
            raise GenerationTimeout(self.timeout) from None
        except OSError as e:
            raise GenerationError(f"{self.argv[0]}: {e}") from e
        if result.returncode != 0:
            raise GenerationError(f"{self.argv[0]} exited with {result.returncode}: {result.stderr.strip()}")
        return result.stdout.strip()


def create_provider(settings):
    system_prompt = get_system_prompt(settings.trigger_keywords)
    timeout = settings.generation_timeout
    if settings.llm_provider == "ollama":
        return OllamaProvider(settings.ollama_model, settings.ollama_host, timeout, system_prompt)
    if settings.llm_provider == "anthropic":
        return AnthropicProvider(settings.anthropic_model, settings.anthropic_api_key, timeout, system_prompt)
    if settings.llm_provider == "cli":
        return CliProvider(settings.llm_cli_command, timeout, system_prompt)
    raise ConfigError(f"Unknown LLM_PROVIDER {settings.llm_provider!r} (expected ollama, anthropic or cli)")


def generate_timed(provider, prompt, attachments=()):
    """Run one generation and return ``(text, latency_ms)``."""
    start = datetime.now()
    text = provider.generate(prompt, attachments)
    latency_ms = int((datetime.now() - start).total_seconds() * 1000)
    return text, latency_ms
