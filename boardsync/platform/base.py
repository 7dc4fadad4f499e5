from abc import ABC, abstractmethod
from datetime import datetime
from typing import Iterable, List, Optional, Sequence

from boardsync.domain.models import BoardField, BoardPage, Item, RateLimitStatus


class BoardPlatform(ABC):
    """Capabilities the reconciliation engine needs from the hosting platform.

    Every method may raise :class:`boardsync.errors.PlatformError` carrying an
    HTTP style status code. Writes that leave the target untouched may raise
    :class:`boardsync.errors.NotModifiedError`.
    """

    @abstractmethod
    def list_board_members(self, board_id: str, cursor: Optional[str] = None) -> BoardPage:
        pass

    @abstractmethod
    def list_board_fields(self, board_id: str) -> List[BoardField]:
        pass

    @abstractmethod
    def admit_to_board(self, board_id: str, content_id: str) -> str:
        """Add ``content_id`` to the board and return its project item id."""

    @abstractmethod
    def set_single_select_field(
        self, board_id: str, project_item_id: str, field_id: str, option_id: str
    ) -> None:
        pass

    @abstractmethod
    def set_iteration_field(
        self, board_id: str, project_item_id: str, field_id: str, iteration_id: str
    ) -> None:
        pass

    @abstractmethod
    def add_assignees(self, repository: str, number: int, logins: Sequence[str]) -> None:
        pass

    @abstractmethod
    def list_updated_items(self, repository: str, since: datetime) -> List[Item]:
        pass

    @abstractmethod
    def list_assigned_items(self, login: str, since: datetime) -> List[Item]:
        pass

    @abstractmethod
    def list_closing_issue_references(self, pr_content_id: str) -> List[str]:
        pass

    @abstractmethod
    def get_item(self, content_id: str) -> Item:
        """Hydrate a single issue or pull request by its content id."""

    @abstractmethod
    def rate_limit_remaining(self) -> RateLimitStatus:
        pass

    def bind_organization(self, organization: str) -> None:
        """Scope organization-wide searches to ``organization``."""

        return None

    def bind_fields(self, status_field_id: str, sprint_field_id: Optional[str]) -> None:
        """Read member column and sprint values from these field ids."""

        return None

    def close(self) -> None:
        return None

    @staticmethod
    def create_platform(name: str, **options) -> "BoardPlatform":
        normalized = (name or "").strip().lower()

        if normalized in {"github", "gh"}:
            from boardsync.platform.github import GitHubPlatform

            token = options.get("token")
            if not token:
                raise ValueError("The GitHub platform requires a token.")
            return GitHubPlatform(
                token=token,
                organization=options.get("organization"),
                api_url=options.get("api_url") or GitHubPlatform.DEFAULT_API_URL,
            )

        if normalized in {"memory", "in-memory"}:
            from boardsync.platform.memory import InMemoryPlatform

            return InMemoryPlatform()

        raise ValueError(f"Unsupported board platform: {name}")


def chunked(values: Iterable[str], size: int) -> List[List[str]]:
    bucket: List[str] = []
    chunks: List[List[str]] = []
    for value in values:
        bucket.append(value)
        if len(bucket) == size:
            chunks.append(bucket)
            bucket = []
    if bucket:
        chunks.append(bucket)
    return chunks
