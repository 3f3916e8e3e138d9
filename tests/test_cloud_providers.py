import asyncio

import pytest

from model_sync.core.cancellation import CancellationToken
from model_sync.core.errors import ProviderConfigError, RunCancelled
from model_sync.services import cloud_providers
from model_sync.services.cloud_providers import (
    AnthropicProvider, AzureOpenAIProvider, CohereProvider, OpenAICompatibleProvider,
    ReplicateProvider, create_provider, parse_cloud_reference
)


@pytest.mark.parametrize("reference,expected", [
    ("@claude/claude-sonnet-4", ("anthropic", None, "claude-sonnet-4")),
    ("@GPT:sk-1/gpt-4o", ("openai", "sk-1", "gpt-4o")),
    ("@google/gemini-2.5-flash", ("gemini", None, "gemini-2.5-flash")),
    ("@hf/meta-llama/Llama-3.3-70B-Instruct", ("huggingface", None, "meta-llama/Llama-3.3-70B-Instruct")),
    ("@togetherai/mixtral", ("together", None, "mixtral")),
])
def test_parse_cloud_reference(reference, expected):
    assert parse_cloud_reference(reference) == expected


@pytest.mark.parametrize("reference", ["openai/gpt-4o", "@/gpt-4o", "@nosuchcloud/model"])
def test_invalid_references(reference):
    with pytest.raises(ProviderConfigError):
        parse_cloud_reference(reference)


def test_key_in_reference_wins_over_environment():
    provider = create_provider("@openai:sk-inline/gpt-4o", env={'OPENAI_API_KEY': "sk-env"})

    assert isinstance(provider, OpenAICompatibleProvider)
    assert provider.api_key == "sk-inline"
    assert provider.base_url == "https://api.openai.com/v1"


def test_key_from_alternate_environment_variable():
    provider = create_provider("@gemini/gemini-2.5-flash", env={'GOOGLE_API_KEY': "g-key"})

    assert provider.api_key == "g-key"
    assert provider.provider_name == "gemini"


def test_missing_key_names_environment_variables():
    with pytest.raises(ProviderConfigError, match="ANTHROPIC_API_KEY"):
        create_provider("@anthropic/claude-sonnet-4", env={})


@pytest.mark.parametrize("reference,cls", [
    ("@anthropic:k/claude-sonnet-4", AnthropicProvider),
    ("@cohere:k/command-r", CohereProvider),
    ("@replicate:k/meta/llama-3-70b", ReplicateProvider),
    ("@mistral:k/mistral-large", OpenAICompatibleProvider),
])
def test_provider_selection(reference, cls):
    assert isinstance(create_provider(reference, env={}), cls)


def test_azure_key_and_endpoint_in_reference():
    provider = create_provider("@azure:secret@myres.openai.azure.com/gpt4-deploy", env={})

    assert isinstance(provider, AzureOpenAIProvider)
    assert provider.api_key == "secret"
    assert provider.base_url == "https://myres.openai.azure.com"
    assert provider.model == "gpt4-deploy"
    assert provider.headers == {'api-key': "secret"}


def test_azure_from_environment():
    provider = create_provider("@azureopenai/gpt4-deploy", env={
        'AZURE_OPENAI_API_KEY': "env-secret",
        'AZURE_OPENAI_ENDPOINT': "https://other.openai.azure.com/",
    })

    assert provider.api_key == "env-secret"
    assert provider.base_url == "https://other.openai.azure.com"


def test_azure_without_endpoint():
    with pytest.raises(ProviderConfigError, match="endpoint"):
        create_provider("@azure:secret/gpt4-deploy", env={})


def test_openai_uses_completion_token_limit():
    openai = OpenAICompatibleProvider("openai", "k", "gpt-4o")
    mistral = OpenAICompatibleProvider("mistral", "k", "mistral-large")

    assert openai._payload("sys", "user", 100)['max_completion_tokens'] == 100
    assert mistral._payload("sys", "user", 100)['max_tokens'] == 100


@pytest.mark.asyncio
async def test_replicate_polling_stops_on_cancellation(monkeypatch):
    token = CancellationToken()
    provider = ReplicateProvider("r8-key", "meta/llama", cancel_token=token)
    provider.poll_interval = 60
    polls = []

    async def pending(session, url, *args, **kwargs):
        polls.append(url)
        return {'status': 'starting', 'urls': {'get': "https://api.replicate.com/v1/predictions/p1"}}

    monkeypatch.setattr(cloud_providers, "post_json", pending)
    monkeypatch.setattr(cloud_providers, "get_json", pending)

    task = asyncio.ensure_future(provider.judge("system", "user", 100))
    await asyncio.sleep(0.01)
    token.cancel()
    try:
        with pytest.raises(RunCancelled):
            await asyncio.wait_for(task, timeout=2)
    finally:
        await provider.close()

    assert len(polls) == 1
