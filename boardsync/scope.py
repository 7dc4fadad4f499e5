"""Resolve the monitored users and repositories declared in the rule document."""

from __future__ import annotations

from typing import List, Mapping, Optional

from boardsync.domain.models import Scope
from boardsync.errors import ConfigurationError, Violation
from boardsync.logging import get_logger
from boardsync.rules.store import MonitoredUserToken, RuleSet

logger = get_logger(__name__)


class ScopeResolver:
    """Turns symbolic tokens such as ``GITHUB_AUTHOR`` into concrete logins.

    ``environment`` is whatever mapping the caller hands over (usually a copy of
    ``os.environ``); the resolver never reads the process environment itself.
    ``monitored_user_override`` takes precedence over environment lookups.
    """

    def __init__(
        self,
        environment: Optional[Mapping[str, str]] = None,
        *,
        monitored_user_override: Optional[str] = None,
    ) -> None:
        self.environment = dict(environment or {})
        self.monitored_user_override = (monitored_user_override or "").strip() or None

    def _resolve_user(self, token: MonitoredUserToken) -> Optional[str]:
        if token.source == "static":
            return token.name.strip() or None
        if self.monitored_user_override:
            return self.monitored_user_override
        value = self.environment.get(token.name, "")
        return value.strip() or None

    @staticmethod
    def qualify_repository(organization: str, repository: str) -> str:
        repository = repository.strip()
        if "/" in repository:
            return repository
        return f"{organization}/{repository}"

    def resolve(self, rule_set: RuleSet) -> Scope:
        violations: List[Violation] = []
        users: List[str] = []
        for index, token in enumerate(rule_set.monitored_users):
            login = self._resolve_user(token)
            if login is None:
                violations.append(
                    Violation(
                        f"automation.user_scope.monitored_users[{index}]",
                        f"{token.source} token {token.name!r} did not resolve to a login",
                    )
                )
            elif login not in users:
                users.append(login)

        repos = []
        for index, repository in enumerate(rule_set.repositories):
            if not repository.strip():
                violations.append(
                    Violation(f"automation.repository_scope.repositories[{index}]", "empty name")
                )
                continue
            repos.append(self.qualify_repository(rule_set.organization, repository))

        if violations:
            raise ConfigurationError("Unresolved monitoring scope", violations)

        scope = Scope(
            organization=rule_set.organization,
            monitored_repos=frozenset(repos),
            monitored_users=tuple(users),
        )
        logger.info(
            "Monitoring %d repositories for %s",
            len(scope.monitored_repos),
            ", ".join(scope.monitored_users),
            extra={"metadata": {"repositories": sorted(scope.monitored_repos)}},
        )
        return scope


__all__ = ["ScopeResolver"]
