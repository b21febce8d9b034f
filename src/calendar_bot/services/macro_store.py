"""Macro store: named text snippets scoped to a channel or a single conversation.

Conversation-scoped macros are stored under the conversation ID and take
precedence over channel-wide macros of the same name.
"""

import logging
from typing import List

from pydantic import BaseModel
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from calendar_bot.database.repositories import MacroRepository
from calendar_bot.database.session import session_scope
from calendar_bot.utils.errors import MacroNotFoundError

logger = logging.getLogger(__name__)


class MacroEntry(BaseModel):
    name: str
    message: str
    is_conv: bool


class MacroStore:
    """CRUD over the macros table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def create(self, channel_name: str, conv_id: str, is_conv: bool, name: str, message: str) -> bool:
        """
        Create or overwrite a macro.

        Returns:
            True if a new macro was inserted, False if an existing one was overwritten
        """
        scope = conv_id if is_conv else channel_name
        try:
            async with session_scope(self.session_factory) as session:
                macros = MacroRepository(session)
                existing = await macros.get(scope, is_conv, name, for_update=True)
                if existing is not None:
                    existing.macro_message = message
                    return False
                await macros.create(channel_name=scope, is_conv=is_conv, macro_name=name, macro_message=message)
        except IntegrityError:
            # Lost an insert race; the other writer's row gets our message
            async with session_scope(self.session_factory) as session:
                existing = await MacroRepository(session).get(scope, is_conv, name, for_update=True)
                existing.macro_message = message
            return False
        logger.info(f"Created macro {name!r} in {'conversation' if is_conv else 'channel'} {scope}")
        return True

    async def get(self, channel_name: str, conv_id: str, name: str) -> str:
        """
        Get a macro's message, preferring the conversation scope.

        Raises:
            MacroNotFoundError: Neither scope has the macro
        """
        async with session_scope(self.session_factory) as session:
            macro = await MacroRepository(session).get_preferred(channel_name, conv_id, name)
        if macro is None:
            raise MacroNotFoundError(name)
        return macro.macro_message

    async def list(self, channel_name: str, conv_id: str) -> List[MacroEntry]:
        """Macros visible in a conversation, by name, conversation scope first."""
        async with session_scope(self.session_factory) as session:
            rows = await MacroRepository(session).list(channel_name, conv_id)
        return [MacroEntry(name=row.macro_name, message=row.macro_message, is_conv=row.is_conv) for row in rows]

    async def remove(self, channel_name: str, conv_id: str, name: str) -> bool:
        """Remove the conversation-scoped macro if present, otherwise the channel-wide one."""
        async with session_scope(self.session_factory) as session:
            macros = MacroRepository(session)
            if await macros.delete(conv_id, True, name):
                return True
            return bool(await macros.delete(channel_name, False, name))
