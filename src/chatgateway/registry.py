"""Model-name routing and adapter construction."""

import re
from collections.abc import Callable, Iterable, Mapping
from typing import Any, Union

import structlog

from chatgateway import config
from chatgateway.errors import ProviderNotFoundError
from chatgateway.providers import BUILTIN_ADAPTERS, ProviderAdapter

_log = structlog.get_logger(__name__)

AdapterFactory = Callable[..., ProviderAdapter]

# A rule target is a provider key, or a callable returning one at resolve time
# so routing follows the current settings.
RuleTarget = Union[str, Callable[[], str]]


def default_rules() -> list[tuple[str, RuleTarget]]:
    return [
        (r"^claude-", "anthropic"),
        (r"^command", "cohere"),
        (r"^grok-", "xai"),
        (r"^(gpt-|o1|o3|o4|chatgpt-)", lambda: config.settings.openai_family_provider),
        (r"^(llama|mixtral|gemma)", lambda: config.settings.fast_inference_provider),
        (r"/", "openrouter"),
    ]


class ProviderRegistry:
    """Maps provider keys to adapter factories and model names to keys.

    Resolution order: an explicit key always wins; otherwise the model name is
    matched against the ordered rules (first match wins); otherwise the
    configured default provider is used.

    Args:
        factories: Initial key -> factory mapping.  Defaults to the built-in
            adapters.
        rules: Initial ``(pattern, key)`` rules.  Defaults to
            :func:`default_rules`.
        default_key: Fallback key.  Defaults to ``settings.default_provider``.
    """

    def __init__(
        self,
        factories: Mapping[str, AdapterFactory] | None = None,
        rules: Iterable[tuple[str, RuleTarget]] | None = None,
        default_key: str | None = None,
    ) -> None:
        self._factories: dict[str, AdapterFactory] = dict(
            BUILTIN_ADAPTERS if factories is None else factories
        )
        self._rules: list[tuple[re.Pattern[str], RuleTarget]] = []
        for pattern, target in default_rules() if rules is None else rules:
            self.add_rule(pattern, target)
        self._default_key = default_key

    def register(self, key: str, factory: AdapterFactory) -> None:
        """Register (or replace) the factory for *key*."""
        if key in self._factories:
            _log.info("provider_replaced", provider=key)
        self._factories[key] = factory

    def add_rule(self, pattern: str, key: RuleTarget, *, first: bool = False) -> None:
        """Add a routing rule; appended unless *first* is set."""
        rule = (re.compile(pattern), key)
        if first:
            self._rules.insert(0, rule)
        else:
            self._rules.append(rule)

    def keys(self) -> list[str]:
        return list(self._factories)

    def resolve_key(self, model: str, explicit_key: str | None = None) -> str:
        if explicit_key:
            key = explicit_key
        else:
            key = self._match(model)

        if key not in self._factories:
            raise ProviderNotFoundError(
                f"no provider registered under '{key}'; available: {sorted(self._factories)}"
            )
        return key

    def resolve(self, model: str, explicit_key: str | None = None) -> AdapterFactory:
        return self._factories[self.resolve_key(model, explicit_key)]

    def create_provider(self, key: str, **options: Any) -> ProviderAdapter:
        """Instantiate the adapter registered under *key*.

        Credentials come from *options* first, then settings/environment; the
        adapter raises :class:`~chatgateway.errors.AuthenticationError` here if
        a required one is missing.
        """
        factory = self._factories.get(key)
        if factory is None:
            raise ProviderNotFoundError(
                f"no provider registered under '{key}'; available: {sorted(self._factories)}"
            )
        _log.debug("provider_create", provider=key)
        return factory(**options)

    def _match(self, model: str) -> str:
        for pattern, target in self._rules:
            if pattern.search(model):
                return target() if callable(target) else target
        return self._default_key or config.settings.default_provider
