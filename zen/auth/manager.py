"""Credential lifecycle per provider: acquire, read, validate, revoke."""

import os
from collections.abc import Callable
from pathlib import Path

import httpx
import typer

from zen.auth.providers import USER_AGENT, ProviderDescriptor, check_token_format, get_provider
from zen.auth.storage import CredentialStore, create_store
from zen.errors import (
    Cancelled,
    Forbidden,
    InvalidArgument,
    NetworkError,
    NotAuthenticated,
    NotFound,
    PromptDisabled,
    RateLimited,
    StorageUnavailable,
    Timeout,
)
from zen.logging import get_logger
from zen.models import Credential, ProviderStatus
from zen.settings import AuthConfig

logger = get_logger("auth")

PromptFn = Callable[[str, bool], str]

_LINEAR_VIEWER_QUERY = "query Viewer { viewer { id name email } }"


def _typer_prompt(label: str, hidden: bool) -> str:
    try:
        return typer.prompt(label, hide_input=hidden)
    except typer.Abort as exc:
        raise Cancelled("authentication cancelled") from exc


class AuthManager:
    """Single source of truth for provider secrets; owns the credential store."""

    def __init__(
        self,
        store: CredentialStore,
        config: AuthConfig | None = None,
        prompt_disabled: bool = False,
        prompt: PromptFn | None = None,
    ) -> None:
        self._store = store
        self._config = config or AuthConfig()
        self._prompt_disabled = prompt_disabled
        self._prompt = prompt or _typer_prompt

    @classmethod
    def from_config(cls, config: AuthConfig, prompt_disabled: bool = False) -> "AuthManager":
        return cls(create_store(config), config, prompt_disabled=prompt_disabled)

    # -----------------------------------------------------------------------
    # Acquisition
    # -----------------------------------------------------------------------

    def authenticate(
        self,
        provider: str,
        token: str | None = None,
        token_file: Path | None = None,
        email: str | None = None,
    ) -> Credential:
        """Acquire a secret and persist it.

        Sources, first hit wins: ``token`` > ``token_file`` (or ``auth.token_file``)
        > the provider's environment variables > an interactive prompt.
        """
        descriptor = get_provider(provider)
        secret, source = self._acquire_secret(descriptor, token, token_file)
        if descriptor.auth_kind == "basic":
            email = email or self._env_email(descriptor) or self._prompt_for(descriptor, f"{descriptor.name} email", False)

        credential = Credential(provider=descriptor.id, secret=secret, email=email)
        self._store.put(credential)
        logger.info("stored %s credential from %s", descriptor.id, source)
        return credential

    def _acquire_secret(
        self, descriptor: ProviderDescriptor, token: str | None, token_file: Path | None
    ) -> tuple[str, str]:
        if token:
            check_token_format(descriptor.id, token)
            return token.strip(), "argument"

        path = token_file or self._config.token_file
        if path is not None:
            path = Path(path).expanduser()
            if path.exists():
                value = path.read_text().strip()
                if value:
                    return value, f"file {path}"
            elif token_file is not None:
                raise NotFound(f"token file {path} does not exist")

        env_secret = self._env_secret(descriptor)
        if env_secret is not None:
            return env_secret

        value = self._prompt_for(descriptor, f"{descriptor.name} token", True).strip()
        check_token_format(descriptor.id, value)
        return value, "prompt"

    def _prompt_for(self, descriptor: ProviderDescriptor, label: str, hidden: bool) -> str:
        if self._prompt_disabled:
            env_list = ", ".join(descriptor.env_vars)
            raise PromptDisabled(
                f"no {descriptor.name} credential found and prompting is disabled",
                details=f"set one of {env_list} or pass --token",
            )
        value = self._prompt(label, hidden)
        if not value or not value.strip():
            raise InvalidArgument(f"{label} cannot be empty")
        return value

    @staticmethod
    def _env_secret(descriptor: ProviderDescriptor) -> tuple[str, str] | None:
        for env_var in descriptor.env_vars:
            value = os.environ.get(env_var, "").strip()
            if value:
                return value, f"${env_var}"
        return None

    @staticmethod
    def _env_email(descriptor: ProviderDescriptor) -> str | None:
        for env_var in descriptor.email_env_vars:
            value = os.environ.get(env_var, "").strip()
            if value:
                return value
        return None

    # -----------------------------------------------------------------------
    # Reads
    # -----------------------------------------------------------------------

    def get_credential(self, provider: str) -> Credential:
        descriptor = get_provider(provider)
        try:
            credential = self._store.get(descriptor.id)
        except NotFound:
            raise NotAuthenticated(
                f"not authenticated with {descriptor.name}", details=f"run: zen auth login {descriptor.id}"
            ) from None
        if credential.is_expired():
            logger.info("%s credential expired, removing", descriptor.id)
            self._store.delete(descriptor.id)
            raise NotAuthenticated(f"{descriptor.name} credential has expired")
        return credential

    def get_credentials(self, provider: str) -> str:
        """Return the stored secret or raise ``NotAuthenticated``."""
        return self.get_credential(provider).secret.get_secret_value()

    def environment_credential(self, provider: str) -> Credential | None:
        """A non-persisted credential from the provider's environment variables, if set."""
        descriptor = get_provider(provider)
        found = self._env_secret(descriptor)
        if found is None:
            return None
        return Credential(provider=descriptor.id, secret=found[0], email=self._env_email(descriptor))

    def is_authenticated(self, provider: str) -> bool:
        """Store lookup only; never touches the network."""
        try:
            self.get_credential(provider)
        except (NotAuthenticated, StorageUnavailable):
            return False
        return True

    def list_providers(self) -> list[str]:
        return self._store.list_providers()

    def delete(self, provider: str) -> None:
        descriptor = get_provider(provider)
        self._store.delete(descriptor.id)
        logger.info("removed %s credential", descriptor.id)

    def provider_info(self, provider: str) -> ProviderStatus:
        descriptor = get_provider(provider)
        credential: Credential | None
        try:
            credential = self.get_credential(provider)
        except (NotAuthenticated, StorageUnavailable):
            credential = None
        return ProviderStatus(
            provider=descriptor.id,
            name=descriptor.name,
            auth_kind=descriptor.auth_kind,
            base_url=descriptor.resolve_base_url(),
            env_vars=list(descriptor.env_vars),
            authenticated=credential is not None,
            email=credential.email if credential else None,
            created_at=credential.created_at if credential else None,
            expires_at=credential.expires_at if credential else None,
        )

    # -----------------------------------------------------------------------
    # Validation
    # -----------------------------------------------------------------------

    def validate_credentials(self, provider: str) -> dict:
        """Probe the provider's identity endpoint and return the identity payload."""
        descriptor = get_provider(provider)
        credential = self.get_credential(provider)
        headers = {
            "User-Agent": USER_AGENT,
            "Accept": "application/json",
            **descriptor.auth_headers(credential.secret.get_secret_value(), credential.email),
        }
        url = f"{descriptor.resolve_base_url()}{descriptor.identity_path}"
        timeout = self._config.validation_timeout_seconds

        try:
            if descriptor.id == "linear":
                response = httpx.post(url, headers=headers, json={"query": _LINEAR_VIEWER_QUERY}, timeout=timeout)
            else:
                response = httpx.get(url, headers=headers, timeout=timeout)
        except httpx.TimeoutException as exc:
            raise Timeout(f"{descriptor.name} did not respond within {timeout}s") from exc
        except httpx.TransportError as exc:
            raise NetworkError(f"could not reach {descriptor.name}", details=str(exc)) from exc

        if response.status_code == 401:
            raise NotAuthenticated(f"{descriptor.name} rejected the stored credential")
        if response.status_code == 403:
            raise Forbidden(f"{descriptor.name} credential lacks the required permissions")
        if response.status_code == 429:
            raise RateLimited(f"{descriptor.name} rate limit exceeded", retry_after=_retry_after(response))
        if not response.is_success:
            raise NetworkError(f"unexpected response from {descriptor.name}: {response.status_code}")

        try:
            payload = response.json()
        except ValueError:
            payload = None
        identity = payload.get("data", payload) if isinstance(payload, dict) else None
        if not isinstance(identity, dict) or not identity.get(descriptor.identity_key):
            raise NotAuthenticated(f"{descriptor.name} returned a malformed identity payload")
        logger.debug("%s credential validated", descriptor.id)
        return identity


def _retry_after(response: httpx.Response) -> int | None:
    try:
        return int(response.headers["Retry-After"])
    except (KeyError, ValueError):
        return None
