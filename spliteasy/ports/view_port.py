"""View port — optional observer the core calls after state changes.

Injected at construction time. The core works unchanged with
NullViewObserver, which is the default everywhere.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from spliteasy.data.models import Group


class ViewObserver(Protocol):
    """Callbacks into the view layer."""

    def refresh_group_list(self) -> None: ...

    def refresh_open_group(self) -> None: ...

    def open_group_id(self) -> str | None: ...

    def prompt_deletion(self, group: Group) -> None: ...


class NullViewObserver:
    """No-op observer for headless use and tests."""

    def refresh_group_list(self) -> None:
        pass

    def refresh_open_group(self) -> None:
        pass

    def open_group_id(self) -> str | None:
        return None

    def prompt_deletion(self, group: Group) -> None:
        pass
