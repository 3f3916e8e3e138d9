"""
Cloud judge providers
Each provider implements the same small capability interface; selection is by
the provider prefix of an '@provider[:token]/model' judge reference.
"""

import asyncio
import os
import re
import time
from typing import Any, Dict, List, Mapping, Optional, Protocol, Tuple

import aiohttp
import structlog

from ..core.cancellation import CancellationToken
from ..core.errors import JudgeResponseError, NetworkError, ProviderConfigError, RequestTimeout
from .judge_parsing import ParsedVerdict, parse_judge_response

logger = structlog.get_logger(__name__)

DEFAULT_TIMEOUT = 300

PROVIDER_ALIASES = {
    'claude': 'anthropic',
    'anthropic': 'anthropic',
    'openai': 'openai',
    'gpt': 'openai',
    'gemini': 'gemini',
    'google': 'gemini',
    'huggingface': 'huggingface',
    'hf': 'huggingface',
    'azure': 'azure',
    'azureopenai': 'azure',
    'cohere': 'cohere',
    'mistral': 'mistral',
    'together': 'together',
    'togetherai': 'together',
    'replicate': 'replicate',
}

PROVIDER_ENV_VARS = {
    'anthropic': ('ANTHROPIC_API_KEY',),
    'openai': ('OPENAI_API_KEY',),
    'gemini': ('GEMINI_API_KEY', 'GOOGLE_API_KEY'),
    'huggingface': ('HF_TOKEN', 'HUGGINGFACE_TOKEN'),
    'azure': ('AZURE_OPENAI_API_KEY',),
    'cohere': ('CO_API_KEY', 'COHERE_API_KEY'),
    'mistral': ('MISTRAL_API_KEY',),
    'together': ('TOGETHER_API_KEY',),
    'replicate': ('REPLICATE_API_TOKEN',),
}

OPENAI_COMPATIBLE_URLS = {
    'openai': 'https://api.openai.com/v1',
    'gemini': 'https://generativelanguage.googleapis.com/v1beta/openai',
    'huggingface': 'https://router.huggingface.co/v1',
    'mistral': 'https://api.mistral.ai/v1',
    'together': 'https://api.together.xyz/v1',
}


class JudgeProvider(Protocol):
    """Capability interface shared by every cloud judge"""
    provider_name: str
    model: str

    async def validate_connection(self) -> Tuple[bool, Optional[str]]: ...

    async def list_models(self) -> Optional[List[str]]: ...

    async def judge(self, system_prompt: str, user_prompt: str, max_tokens: int) -> ParsedVerdict: ...

    async def close(self) -> None: ...


# Shared helpers
async def post_json(session: aiohttp.ClientSession,
                    url: str,
                    payload: Dict[str, Any],
                    headers: Mapping[str, str],
                    timeout: float) -> Dict[str, Any]:
    """POST JSON and return the decoded body, mapping failures onto the error taxonomy"""
    try:
        async with session.post(url, json=payload, headers=dict(headers),
                                timeout=aiohttp.ClientTimeout(total=timeout)) as response:
            text = await response.text()
            _check_status(response.status, text, url)
            return await response.json(content_type=None)
    except asyncio.TimeoutError as e:
        raise RequestTimeout(f"POST {url} timed out after {timeout}s") from e
    except aiohttp.ClientError as e:
        raise NetworkError(f"POST {url} failed: {e}") from e


async def get_json(session: aiohttp.ClientSession,
                   url: str,
                   headers: Mapping[str, str],
                   timeout: float) -> Dict[str, Any]:
    try:
        async with session.get(url, headers=dict(headers),
                               timeout=aiohttp.ClientTimeout(total=timeout)) as response:
            text = await response.text()
            _check_status(response.status, text, url)
            return await response.json(content_type=None)
    except asyncio.TimeoutError as e:
        raise RequestTimeout(f"GET {url} timed out after {timeout}s") from e
    except aiohttp.ClientError as e:
        raise NetworkError(f"GET {url} failed: {e}") from e


def _check_status(status: int, body: str, url: str) -> None:
    if status < 400:
        return
    if status in (401, 403):
        raise ProviderConfigError(f"Authentication failed for {url} (HTTP {status})")
    raise NetworkError(f"{url} returned HTTP {status}: {body.strip()[:500]}", status=status)


async def _validate(provider: "JudgeProvider") -> Tuple[bool, Optional[str]]:
    """Send a tiny judge request and report whether the provider answered"""
    try:
        await provider.judge("Reply with JSON.", 'Return {"score": 100, "reason": "ok"}', 20)
    except ProviderConfigError as e:
        return False, f"{e}. Check the API key ({' or '.join(PROVIDER_ENV_VARS[provider.provider_name])})"
    except NetworkError as e:
        return False, f"API error: {e}"
    except JudgeResponseError as e:
        # an unparseable answer still proves the endpoint and credentials work
        logger.debug("Validation response not parseable", provider=provider.provider_name, error=str(e))
    return True, None


class _SessionMixin:
    _session: Optional[aiohttp.ClientSession] = None

    @property
    def session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()


class AnthropicProvider(_SessionMixin):
    """Anthropic Messages API"""
    provider_name = 'anthropic'
    base_url = 'https://api.anthropic.com/v1'
    api_version = '2023-06-01'

    def __init__(self, api_key: str, model: str, timeout: float = DEFAULT_TIMEOUT):
        self.api_key = api_key
        self.model = model
        self.timeout = timeout

    @property
    def headers(self) -> Dict[str, str]:
        return {'x-api-key': self.api_key, 'anthropic-version': self.api_version}

    async def validate_connection(self):
        return await _validate(self)

    async def list_models(self):
        try:
            data = await get_json(self.session, f"{self.base_url}/models", self.headers, 30)
        except (NetworkError, ProviderConfigError):
            return None
        return [m['id'] for m in data.get('data', []) if 'id' in m] or None

    async def judge(self, system_prompt, user_prompt, max_tokens):
        payload = {
            'model': self.model,
            'max_tokens': max_tokens,
            'system': system_prompt,
            'temperature': 0.0,
            'messages': [{'role': 'user', 'content': user_prompt}],
        }
        data = await post_json(self.session, f"{self.base_url}/messages", payload, self.headers, self.timeout)
        text = ''.join(
            block.get('text', '') for block in data.get('content', []) if block.get('type') == 'text'
        )
        return parse_judge_response(text)


class OpenAICompatibleProvider(_SessionMixin):
    """Chat Completions API: OpenAI itself, Gemini, Hugging Face router, Mistral, Together"""

    def __init__(self, provider_name: str, api_key: str, model: str,
                 base_url: Optional[str] = None, timeout: float = DEFAULT_TIMEOUT):
        self.provider_name = provider_name
        self.api_key = api_key
        self.model = model
        self.base_url = (base_url or OPENAI_COMPATIBLE_URLS[provider_name]).rstrip('/')
        self.timeout = timeout

    @property
    def headers(self) -> Dict[str, str]:
        return {'Authorization': f"Bearer {self.api_key}"}

    async def validate_connection(self):
        return await _validate(self)

    async def list_models(self):
        try:
            data = await get_json(self.session, f"{self.base_url}/models", self.headers, 30)
        except (NetworkError, ProviderConfigError):
            return None
        return [m['id'] for m in data.get('data', []) if 'id' in m] or None

    def _payload(self, system_prompt: str, user_prompt: str, max_tokens: int) -> Dict[str, Any]:
        payload = {
            'model': self.model,
            'messages': [
                {'role': 'system', 'content': system_prompt},
                {'role': 'user', 'content': user_prompt},
            ],
            'temperature': 0.0,
        }
        if self.provider_name == 'openai':
            payload['max_completion_tokens'] = max_tokens
        else:
            payload['max_tokens'] = max_tokens
        return payload

    async def judge(self, system_prompt, user_prompt, max_tokens):
        data = await post_json(
            self.session, f"{self.base_url}/chat/completions",
            self._payload(system_prompt, user_prompt, max_tokens), self.headers, self.timeout,
        )
        choices = data.get('choices') or [{}]
        text = (choices[0].get('message') or {}).get('content') or ''
        return parse_judge_response(text)


class AzureOpenAIProvider(OpenAICompatibleProvider):
    """Azure OpenAI deployment; the model name is the deployment name"""
    api_version = '2024-10-21'

    def __init__(self, api_key: str, endpoint: str, deployment: str, timeout: float = DEFAULT_TIMEOUT):
        super().__init__('azure', api_key, deployment, base_url=endpoint, timeout=timeout)

    @property
    def headers(self) -> Dict[str, str]:
        return {'api-key': self.api_key}

    async def list_models(self):
        # deployments are user defined and not listable with a data-plane key
        return [self.model]

    async def judge(self, system_prompt, user_prompt, max_tokens):
        url = (f"{self.base_url}/openai/deployments/{self.model}/chat/completions"
               f"?api-version={self.api_version}")
        payload = self._payload(system_prompt, user_prompt, max_tokens)
        payload.pop('model')
        data = await post_json(self.session, url, payload, self.headers, self.timeout)
        choices = data.get('choices') or [{}]
        text = (choices[0].get('message') or {}).get('content') or ''
        return parse_judge_response(text)


class CohereProvider(_SessionMixin):
    """Cohere chat API"""
    provider_name = 'cohere'
    base_url = 'https://api.cohere.com/v1'

    def __init__(self, api_key: str, model: str, timeout: float = DEFAULT_TIMEOUT):
        self.api_key = api_key
        self.model = model
        self.timeout = timeout

    @property
    def headers(self) -> Dict[str, str]:
        return {'Authorization': f"Bearer {self.api_key}"}

    async def validate_connection(self):
        return await _validate(self)

    async def list_models(self):
        try:
            data = await get_json(self.session, f"{self.base_url}/models", self.headers, 30)
        except (NetworkError, ProviderConfigError):
            return None
        return [m['name'] for m in data.get('models', []) if 'name' in m] or None

    async def judge(self, system_prompt, user_prompt, max_tokens):
        payload = {
            'model': self.model,
            'message': user_prompt,
            'preamble': system_prompt,
            'temperature': 0.0,
            'max_tokens': max_tokens,
        }
        data = await post_json(self.session, f"{self.base_url}/chat", payload, self.headers, self.timeout)
        return parse_judge_response(data.get('text', ''))


class ReplicateProvider(_SessionMixin):
    """Replicate predictions API, polled until the prediction settles"""
    provider_name = 'replicate'
    base_url = 'https://api.replicate.com/v1'
    poll_interval = 2.0
    max_poll_time = 300.0

    def __init__(self,
                 api_key: str,
                 model: str,
                 timeout: float = DEFAULT_TIMEOUT,
                 cancel_token: Optional[CancellationToken] = None):
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        self.cancel_token = cancel_token

    @property
    def headers(self) -> Dict[str, str]:
        return {'Authorization': f"Bearer {self.api_key}"}

    async def _sleep(self, seconds: float) -> None:
        if self.cancel_token is not None:
            await self.cancel_token.sleep(seconds)
        else:
            await asyncio.sleep(seconds)

    async def validate_connection(self):
        try:
            await get_json(self.session, f"{self.base_url}/models/{self.model}", self.headers, 30)
        except ProviderConfigError as e:
            return False, f"{e}. Check REPLICATE_API_TOKEN"
        except NetworkError as e:
            return False, f"Model '{self.model}' not available: {e}"
        return True, None

    async def list_models(self):
        return None

    async def judge(self, system_prompt, user_prompt, max_tokens):
        payload = {'input': {
            'prompt': f"{system_prompt}\n\n{user_prompt}",
            'max_new_tokens': max_tokens,
            'temperature': 0.01,
        }}
        prediction = await post_json(
            self.session, f"{self.base_url}/models/{self.model}/predictions",
            payload, self.headers, self.timeout,
        )
        get_url = (prediction.get('urls') or {}).get('get')
        started = time.monotonic()
        while prediction.get('status') not in ('succeeded', 'failed', 'canceled'):
            if time.monotonic() - started > self.max_poll_time:
                raise RequestTimeout(f"Replicate prediction timed out after {self.max_poll_time:.0f}s")
            await self._sleep(self.poll_interval)
            prediction = await get_json(self.session, get_url, self.headers, 30)
        if prediction['status'] != 'succeeded':
            raise NetworkError(f"Replicate prediction {prediction['status']}: {prediction.get('error')}")
        output = prediction.get('output')
        text = ''.join(output) if isinstance(output, list) else (output or '')
        return parse_judge_response(text)


# Reference parsing and factory
def parse_cloud_reference(reference: str) -> Tuple[str, Optional[str], str]:
    """'@provider[:token]/model' -> (canonical provider, token or None, model)"""
    match = re.match(r'^@([A-Za-z]+)(?::([^/]+))?/(.+)$', reference.strip())
    if not match:
        raise ProviderConfigError(
            f"Invalid cloud judge '{reference}', expected @provider[:token]/model"
        )
    alias, token, model = match.groups()
    provider = PROVIDER_ALIASES.get(alias.lower())
    if provider is None:
        raise ProviderConfigError(
            f"Unknown judge provider '{alias}'; known: {', '.join(sorted(set(PROVIDER_ALIASES.values())))}"
        )
    return provider, token, model


def _env_key(provider: str, env: Mapping[str, str]) -> Optional[str]:
    for name in PROVIDER_ENV_VARS[provider]:
        if env.get(name):
            return env[name]
    return None


def create_provider(reference: str,
                    timeout: float = DEFAULT_TIMEOUT,
                    env: Optional[Mapping[str, str]] = None,
                    cancel_token: Optional[CancellationToken] = None) -> JudgeProvider:
    """Build the provider for a cloud judge reference, taking the key from the reference or environment"""
    env = os.environ if env is None else env
    provider, token, model = parse_cloud_reference(reference)

    if provider == 'azure':
        endpoint = None
        if token and '@' in token:
            token, endpoint = token.split('@', 1)
        key = token or _env_key(provider, env)
        endpoint = endpoint or env.get('AZURE_OPENAI_ENDPOINT')
        if not key or not endpoint:
            raise ProviderConfigError(
                "Azure judge needs a key and endpoint: @azure:key@endpoint/deployment or "
                "AZURE_OPENAI_API_KEY and AZURE_OPENAI_ENDPOINT"
            )
        if not endpoint.startswith(('http://', 'https://')):
            endpoint = f"https://{endpoint}"
        return AzureOpenAIProvider(key, endpoint.rstrip('/'), model, timeout)

    key = token or _env_key(provider, env)
    if not key:
        raise ProviderConfigError(
            f"No API key for {provider}: pass @{provider}:<key>/{model} or set "
            f"{' or '.join(PROVIDER_ENV_VARS[provider])}"
        )
    logger.info("Cloud judge configured", provider=provider, model=model, key_from_env=token is None)
    if provider == 'anthropic':
        return AnthropicProvider(key, model, timeout)
    if provider == 'cohere':
        return CohereProvider(key, model, timeout)
    if provider == 'replicate':
        return ReplicateProvider(key, model, timeout, cancel_token=cancel_token)
    return OpenAICompatibleProvider(provider, key, model, timeout=timeout)
