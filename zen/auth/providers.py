"""Static descriptors for the providers zen can authenticate against."""

import base64
import os
import re
from dataclasses import dataclass, field
from typing import Literal

from zen.errors import InvalidArgument

USER_AGENT = "zen-cli/1.0"


@dataclass(frozen=True)
class ProviderDescriptor:
    id: str
    name: str
    auth_kind: Literal["bearer", "basic"]
    base_url: str
    env_vars: tuple[str, ...]
    identity_path: str
    identity_key: str  # key that must be present in the identity payload
    header: str = "Authorization"  # header carrying the secret
    scheme: str = "Bearer"  # "" sends the raw secret
    email_env_vars: tuple[str, ...] = ()
    base_url_env_vars: tuple[str, ...] = ()
    token_prefixes: tuple[str, ...] = field(default=())
    min_token_length: int = 8

    def resolve_base_url(self) -> str:
        for env_var in self.base_url_env_vars:
            value = os.environ.get(env_var)
            if value:
                return value.rstrip("/")
        return self.base_url

    def auth_headers(self, secret: str, email: str | None = None) -> dict[str, str]:
        """Headers that attach ``secret`` the way this provider expects."""
        if self.auth_kind == "basic":
            pair = base64.b64encode(f"{email or ''}:{secret}".encode()).decode()
            return {"Authorization": f"Basic {pair}"}
        value = f"{self.scheme} {secret}" if self.scheme else secret
        return {self.header: value}


PROVIDERS: dict[str, ProviderDescriptor] = {
    "github": ProviderDescriptor(
        id="github",
        name="GitHub",
        auth_kind="bearer",
        base_url="https://api.github.com",
        env_vars=("ZEN_GITHUB_TOKEN", "GITHUB_TOKEN", "GH_TOKEN"),
        identity_path="/user",
        identity_key="login",
        token_prefixes=("ghp_", "gho_", "ghu_", "ghs_", "ghr_", "github_pat_"),
    ),
    "gitlab": ProviderDescriptor(
        id="gitlab",
        name="GitLab",
        auth_kind="bearer",
        base_url="https://gitlab.com/api/v4",
        env_vars=("ZEN_GITLAB_TOKEN", "GITLAB_TOKEN", "GL_TOKEN"),
        identity_path="/user",
        identity_key="username",
        header="Private-Token",
        scheme="",
        min_token_length=20,
    ),
    "jira": ProviderDescriptor(
        id="jira",
        name="Jira",
        auth_kind="basic",
        base_url="https://your-domain.atlassian.net",
        env_vars=("ZEN_JIRA_TOKEN", "JIRA_TOKEN"),
        identity_path="/rest/api/3/myself",
        identity_key="accountId",
        email_env_vars=("ZEN_JIRA_EMAIL", "JIRA_EMAIL"),
        base_url_env_vars=("ZEN_JIRA_URL", "JIRA_URL"),
    ),
    "linear": ProviderDescriptor(
        id="linear",
        name="Linear",
        auth_kind="bearer",
        base_url="https://api.linear.app",
        env_vars=("ZEN_LINEAR_TOKEN", "LINEAR_API_KEY"),
        identity_path="/graphql",
        identity_key="viewer",
        scheme="",
    ),
}

_CLASSIC_GITHUB_TOKEN = re.compile(r"^[0-9a-f]{40}$")


def get_provider(provider: str) -> ProviderDescriptor:
    try:
        return PROVIDERS[provider]
    except KeyError:
        valid = ", ".join(sorted(PROVIDERS))
        raise InvalidArgument(f"unknown provider '{provider}'. Valid: {valid}") from None


def check_token_format(provider: str, token: str) -> None:
    """Reject obviously malformed tokens before they are stored."""
    descriptor = get_provider(provider)
    token = token.strip()
    if not token:
        raise InvalidArgument(f"{descriptor.name} token is empty")
    if descriptor.id == "github":
        if token.startswith(descriptor.token_prefixes) or _CLASSIC_GITHUB_TOKEN.match(token):
            return
        expected = ", ".join(descriptor.token_prefixes)
        raise InvalidArgument(f"GitHub tokens start with one of {expected}")
    if descriptor.id == "gitlab" and token.startswith("glpat-"):
        return
    if len(token) < descriptor.min_token_length:
        raise InvalidArgument(f"{descriptor.name} token is too short")
