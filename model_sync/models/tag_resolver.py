"""
Wildcard tag resolution against registry, hub and local listings
"""

import re
from typing import Dict, Iterable, List, Optional, Tuple

import structlog

from ..core.errors import PatternMatchedNothing
from .ollama_client import OllamaClient
from .registry_client import RegistryClient, hub_repo_id

logger = structlog.get_logger(__name__)


def is_wildcard(pattern: str) -> bool:
    return '*' in pattern


def compile_pattern(pattern: str) -> re.Pattern:
    """Anchored, case-insensitive regex for a glob where only * is special"""
    return re.compile('^' + '.*'.join(re.escape(part) for part in pattern.split('*')) + '$', re.IGNORECASE)


def dedupe(items: Iterable[str]) -> List[str]:
    """Drop case-insensitive duplicates, keeping first occurrence order"""
    seen = set()
    result = []
    for item in items:
        key = item.lower()
        if key not in seen:
            seen.add(key)
            result.append(item)
    return result


def match_tags(pattern: str, tags: Iterable[str], source: str = "") -> List[str]:
    """Tags matching pattern, in listing order; PatternMatchedNothing when empty"""
    regex = compile_pattern(pattern)
    matched = dedupe(tag for tag in tags if regex.match(tag))
    if not matched:
        raise PatternMatchedNothing(pattern, source)
    return matched


def split_pattern(pattern: str) -> Tuple[Optional[str], str]:
    """'model:Q4*' -> ('model', 'Q4*'); bare patterns have no model"""
    model, sep, tag = pattern.rpartition(':')
    if sep and model and '/' not in tag:
        return model, tag
    return None, pattern


class TagResolver:
    """Expands quantization tag patterns into concrete identifiers"""

    def __init__(self, registry: RegistryClient, local_client: Optional[OllamaClient] = None):
        self.registry = registry
        self.local_client = local_client
        self._listings: Dict[Tuple[str, bool], List[str]] = {}

    async def list_tags(self, model: str, local: bool = False) -> List[str]:
        """Tags available for model: local server, Hugging Face repository or library"""
        key = (model.lower(), local)
        if key in self._listings:
            return self._listings[key]

        if local:
            if self.local_client is None:
                raise ValueError("No local server configured for local tag listing")
            prefix = f"{model.lower()}:"
            tags = [
                entry['name'].split(':', 1)[1]
                for entry in await self.local_client.list_models()
                if entry.get('name', '').lower().startswith(prefix)
            ]
        elif model.lower().startswith(('hf.co/', 'huggingface.co/')):
            tags = await self.registry.list_hub_tags(hub_repo_id(model))
        else:
            tags = await self.registry.list_library_tags(model)

        logger.debug("Fetched tag listing", model=model, local=local, count=len(tags))
        self._listings[key] = tags
        return tags

    async def resolve(self, model: str, pattern: str, local: bool = False) -> List[str]:
        """
        Resolve one pattern for model.

        Literal patterns pass through unchanged. A 'source:tag*' pattern is matched
        against the listing of 'source' and yields 'source:tag' identifiers; bare
        patterns are matched against model's listing and yield tags.
        """
        if not is_wildcard(pattern):
            return [pattern]
        source, tag_pattern = split_pattern(pattern)
        listing_model = source or model
        tags = match_tags(tag_pattern, await self.list_tags(listing_model, local), listing_model)
        if source:
            return [f"{source}:{tag}" for tag in tags]
        return tags

    async def resolve_many(self, model: str, patterns: Iterable[str], local: bool = False) -> List[str]:
        resolved: List[str] = []
        for pattern in patterns:
            pattern = pattern.strip()
            if not pattern:
                continue
            matches = await self.resolve(model, pattern, local)
            if is_wildcard(pattern):
                logger.info("Expanded tag pattern", pattern=pattern, matches=matches)
            resolved.extend(matches)
        return dedupe(resolved)
