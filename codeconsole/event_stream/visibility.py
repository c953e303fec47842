"""Visibility reporter -- tells the relay whether the user is watching."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from codeconsole.event_stream.connection import ConnectionManager


class VisibilityReporter:
    """Remembers the last reported state so it can be re-sent after a reconnect.

    The relay keys visibility by client id, which changes on every
    connection, so the last known state has to be reported again.
    """

    def __init__(self, connection: ConnectionManager) -> None:
        self._connection = connection
        self.visible = True
        self.focused_session_id: str | None = None

    def report(self, visible: bool, focused_session_id: str | None = None) -> None:
        self.visible = visible
        self.focused_session_id = focused_session_id
        self._connection.report_visibility(visible, focused_session_id)

    def resend(self) -> None:
        self._connection.report_visibility(self.visible, self.focused_session_id)
