"""Send control flow: resolve the branch, route to a provider, persist.

ConversationService is the one caller of the provider router. It
serializes sends per branch (a second send while one is in flight raises
BranchBusyError), stores the user message before routing and the final
assistant message once the provider reports done. Before a send on a
session the CLI resumes, the SessionRotator may swap in a fresh CLI
session seeded with a checkpoint summary.
"""
from __future__ import annotations

import logging
from typing import AsyncIterator

from grove.adapters.events import (
    CancelledEvent,
    DoneEvent,
    ErrorEvent,
    ProviderEvent,
    TextEvent,
    ToolEndEvent,
    ToolStartEvent,
)
from grove.engine.errors import BranchBusyError, BranchInvariantError
from grove.engine.providers.base import SendContext
from grove.engine.providers.registry import ProviderRouter
from grove.engine.session_rotator import SessionRotator, seed_message
from grove.engine.summarizer import BranchSummarizer, SummaryStyle
from grove.shared.models.message import Message, MessageRole
from grove.shared.models.tree import Branch, BranchStatus, BranchType, Tree
from grove.shared.services.event_log import EventLog
from grove.shared.services.message_store import MessageStore
from grove.shared.services.tree_store import TreeStore

logger = logging.getLogger(__name__)

TITLE_LENGTH = 60
FALLBACK_SUMMARY_LENGTH = 200


class ConversationService:
    """Per-branch send orchestration over the stores and the router."""

    def __init__(
        self,
        tree_store: TreeStore,
        message_store: MessageStore,
        router: ProviderRouter,
        *,
        event_log: EventLog | None = None,
        default_model: str | None = None,
        summarizer: BranchSummarizer | None = None,
        rotator: SessionRotator | None = None,
    ) -> None:
        self._trees = tree_store
        self._messages = message_store
        self._router = router
        self._event_log = event_log
        self._default_model = default_model
        self._summarizer = summarizer
        self._rotator = rotator
        self._busy: set[str] = set()

    @property
    def router(self) -> ProviderRouter:
        return self._router

    def is_busy(self, branch_id: str) -> bool:
        return branch_id in self._busy

    # ── Tree helpers ──

    def start_conversation(
        self,
        first_message: str,
        *,
        tree_name: str | None = None,
        project: str | None = None,
        working_directory: str | None = None,
        session_id: str | None = None,
        context_snapshot: str | None = None,
        model: str | None = None,
    ) -> tuple[Tree, Branch]:
        """Create a tree with one root branch titled after *first_message*."""
        title = first_message.strip()[:TITLE_LENGTH] or "New conversation"
        tree = self._trees.create_tree(
            tree_name or title, project=project, working_directory=working_directory,
        )
        branch = self._trees.create_branch(
            tree.id,
            branch_type=BranchType.CONVERSATION,
            title=title,
            model=model,
            context_snapshot=context_snapshot,
            working_directory=working_directory,
            session_id=session_id,
        )
        return tree, branch

    def edit_message(self, branch_id: str, message_id: int, new_content: str) -> Branch:
        """Fork *branch_id* at an edited user message. Reply with send()."""
        branch = self._trees.fork_on_edit(branch_id, message_id, new_content)
        self._record("branch_fork", branch, {
            "parent_branch_id": branch_id,
            "edited_message_id": message_id,
            "fork_from_message_id": branch.fork_from_message_id,
        })
        return branch

    def fork_at(self, branch_id: str, message_id: int, title: str | None = None) -> Branch:
        branch = self._trees.fork_branch(branch_id, message_id, title=title)
        self._record("branch_fork", branch, {
            "parent_branch_id": branch_id,
            "fork_from_message_id": message_id,
        })
        return branch

    # ── Send ──

    async def send(
        self,
        branch_id: str,
        message: str | None = None,
        *,
        provider_id: str | None = None,
        model: str | None = None,
        working_directory: str | None = None,
    ) -> AsyncIterator[ProviderEvent]:
        """Stream a reply on *branch_id*.

        With *message* None the reply answers the session's trailing user
        message (used after edit_message()).
        """
        if branch_id in self._busy:
            raise BranchBusyError(branch_id)
        self._busy.add(branch_id)
        try:
            branch = self._trees.get_branch(branch_id)
            tree = self._trees.get_tree(branch.tree_id)
            history = self._messages.get_messages(branch.session_id, limit=-1)
            user_message = self._user_message(branch, history, message)
            prior = [m for m in history if m.id != user_message.id and m.role != MessageRole.SYSTEM]
            context = SendContext(
                message=user_message.content,
                session_id=branch.session_id,
                branch_id=branch.id,
                parent_session_id=self._parent_session_id(branch),
                working_directory=working_directory or tree.working_directory,
                model=model or branch.model or self._default_model,
                project=tree.project,
                is_new_session=not prior,
                user_message_id=user_message.id,
            )
            if prior:
                await self._maybe_rotate(branch, context, provider_id)
            async for event in self._relay(branch, context, provider_id):
                yield event
        finally:
            self._busy.discard(branch_id)

    def _parent_session_id(self, branch: Branch) -> str | None:
        if not branch.parent_branch_id:
            return None
        return self._trees.get_branch(branch.parent_branch_id).session_id

    async def open_branch(self, branch_id: str, provider_id: str | None = None) -> list[Message]:
        """History of *branch_id*, with the provider's session state warmed."""
        branch = self._trees.get_branch(branch_id)
        tree = self._trees.get_tree(branch.tree_id)
        history = self._messages.get_messages(branch.session_id, limit=-1)
        await self._router.warm_up(SendContext(
            message="",
            session_id=branch.session_id,
            branch_id=branch.id,
            parent_session_id=self._parent_session_id(branch),
            working_directory=tree.working_directory,
            model=branch.model or self._default_model,
            project=tree.project,
            is_new_session=not history,
        ), provider_id)
        return history

    async def _maybe_rotate(
        self, branch: Branch, context: SendContext, provider_id: str | None,
    ) -> None:
        if self._rotator is None:
            return
        provider = self._router.get(provider_id) if provider_id else self._router.active_provider
        if provider is None:
            return
        checkpoint = await self._rotator.rotate_if_needed(
            branch.session_id, branch.id, provider.identifier,
        )
        if checkpoint is not None:
            context.message = seed_message(checkpoint, context.message)
            context.fresh_context = True

    def _user_message(
        self, branch: Branch, history: list[Message], message: str | None,
    ) -> Message:
        if message is not None:
            stored = self._messages.append(branch.session_id, MessageRole.USER, message)
            self._record("user_message", branch, {"chars": len(message)})
            return stored
        if history and history[-1].role == MessageRole.USER:
            return history[-1]
        raise BranchInvariantError(branch.id, "no pending user message to reply to")

    async def _relay(
        self, branch: Branch, context: SendContext, provider_id: str | None,
    ) -> AsyncIterator[ProviderEvent]:
        parts: list[str] = []
        text_events = 0
        terminal: ProviderEvent | None = None
        async for event in self._router.send(context, provider_id):
            if isinstance(event, TextEvent):
                parts.append(event.text)
                text_events += 1
            elif isinstance(event, ToolStartEvent):
                self._record("tool_start", branch, {"name": event.name})
            elif isinstance(event, ToolEndEvent):
                self._record("tool_end", branch, {"name": event.name, "is_error": event.is_error})
            elif isinstance(event, DoneEvent):
                terminal = event
                self._finish(branch, "".join(parts), text_events)
            elif isinstance(event, ErrorEvent):
                terminal = event
                logger.warning(
                    "Send failed branch=%s kind=%s: %s", branch.id, event.kind.value, event.message,
                )
                self._record("error", branch, {"kind": event.kind.value, "message": event.message})
            elif isinstance(event, CancelledEvent):
                terminal = event
                self._record("cancelled", branch, {"chars": sum(len(p) for p in parts)})
            yield event
            if terminal is not None:
                return
        # Adapters always end with a terminal event; keep what streamed if not.
        if parts:
            self._finish(branch, "".join(parts), text_events)

    def _finish(self, branch: Branch, response: str, text_events: int) -> None:
        if response:
            self._messages.append(branch.session_id, MessageRole.ASSISTANT, response)
        self._trees.update_tree_timestamp(branch.tree_id)
        self._record("assistant_message", branch, {
            "chars": len(response), "text_events": text_events,
        })

    async def cancel(self, branch_id: str) -> None:
        branch = self._trees.get_branch(branch_id)
        await self._router.cancel(branch.session_id)

    # ── Branch lifecycle ──

    async def complete_branch(
        self, branch_id: str, *, absorb_into_parent: bool = False,
    ) -> Branch:
        """Mark a branch completed with a summary of its conversation.

        The summary comes from the summarizer, or else the start of the
        last assistant reply. With *absorb_into_parent* a compact digest is
        appended to the parent branch's session as a system message.
        """
        if branch_id in self._busy:
            raise BranchBusyError(branch_id)
        branch = self._trees.get_branch(branch_id)
        summary = None
        if self._summarizer is not None:
            summary = await self._summarizer.summarize(branch.session_id)
        if summary is None:
            summary = self._fallback_summary(branch)
        branch = self._trees.update_branch(
            branch_id, status=BranchStatus.COMPLETED, summary=summary or None,
        )
        absorbed = False
        if absorb_into_parent and branch.parent_branch_id:
            digest = None
            if self._summarizer is not None:
                digest = await self._summarizer.summarize(branch.session_id, SummaryStyle.DIGEST)
            digest = digest or summary
            if digest:
                parent = self._trees.get_branch(branch.parent_branch_id)
                label = branch.title or branch.id
                self._messages.append(
                    parent.session_id, MessageRole.SYSTEM, f"[Branch '{label}' completed]\n{digest}",
                )
                absorbed = True
        self._record("branch_complete", branch, {
            "summary_chars": len(summary), "absorbed": absorbed,
        })
        logger.info("Branch completed id=%s absorbed=%s", branch_id, absorbed)
        return branch

    def _fallback_summary(self, branch: Branch) -> str:
        history = self._messages.get_messages(branch.session_id, limit=-1)
        for message in reversed(history):
            if message.role == MessageRole.ASSISTANT:
                return message.content[:FALLBACK_SUMMARY_LENGTH]
        return ""

    def delete_tree(self, tree_id: str) -> list[str]:
        """Delete a tree and drop every provider's per-session state for it."""
        session_ids = self._trees.delete_tree(tree_id)
        self._router.forget(session_ids)
        return session_ids

    def delete_project(self, project: str) -> list[str]:
        session_ids = self._trees.delete_project(project)
        self._router.forget(session_ids)
        return session_ids

    def _record(self, event_type: str, branch: Branch, detail: dict) -> None:
        if self._event_log is None:
            return
        self._event_log.record(
            event_type, session_id=branch.session_id, branch_id=branch.id, detail=detail,
        )
