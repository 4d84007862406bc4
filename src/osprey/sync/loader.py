# =============================================================================
# Message Body Loader
# =============================================================================
# Downloads what a message needs to be displayed: its viewable text parts and
# the metadata of everything else.
#
# Key responsibilities:
#   - copy_remote_fields(): envelope and flags from a RemoteMessage onto a row
#   - MessageLoader: structure -> viewable parts -> body + attachment metadata
#
# Design notes:
#   - Attachment content is never downloaded here. The MIME part id is kept
#     in Attachment.location so it can be fetched on demand later.
#   - A row is marked COMPLETE only after its body has been stored.
# =============================================================================

import logging
from datetime import datetime

from osprey.core import Account, Attachment, LoadState, Mailbox, Message, MessageFlags
from osprey.imap.folder import BodyPart, FetchItem, FetchProfile, Flag, RemoteFolder, RemoteMessage
from osprey.storage.repository import Repository

logger = logging.getLogger(__name__)


def _epoch_ms(value: datetime | None) -> int:
    return int(value.timestamp() * 1000) if value is not None else 0


def copy_remote_fields(message: Message, remote: RemoteMessage) -> None:
    """
    Copy server state from a fetched RemoteMessage onto a local row.

    The timestamp is the sent date, falling back to the server's internal
    date when the envelope has none.
    """
    message.server_id = remote.uid
    message.message_id = remote.message_id
    message.subject = remote.subject
    message.sender = remote.sender
    message.sender_name = remote.sender_name
    message.recipients = list(remote.recipients)
    message.cc = list(remote.cc)
    message.timestamp = _epoch_ms(remote.sent_date or remote.internal_date)
    message.server_timestamp = _epoch_ms(remote.internal_date)
    message.flag_read = remote.is_set(Flag.SEEN)
    message.flag_favorite = remote.is_set(Flag.FLAGGED)
    if remote.is_set(Flag.ANSWERED):
        message.flags |= MessageFlags.REPLIED_TO
    else:
        message.flags &= ~MessageFlags.REPLIED_TO


def _attachment_for(part: BodyPart) -> Attachment:
    return Attachment(
        filename=part.filename or f"part-{part.part_id}",
        content_type=part.content_type,
        size=part.size,
        content_id=part.content_id,
        is_inline=part.disposition == "inline" or bool(part.content_id),
        location=part.part_id,
    )


class MessageLoader:
    """
    Loads bodies for messages that were synced envelope-only.

    Usage:
        >>> loader = MessageLoader(repo)
        >>> await loader.load_unsynced_messages(folder, account, unsynced, mailbox)
    """

    def __init__(self, repo: Repository) -> None:
        self.repo = repo

    async def load_unsynced_messages(
        self,
        folder: RemoteFolder,
        account: Account,
        messages: list[RemoteMessage],
        mailbox: Mailbox,
    ) -> int:
        """
        Fetch structure and viewable parts, then store them.

        Args:
            folder: Open remote folder holding the messages.
            account: Owning account.
            messages: Messages to load, newest first.
            mailbox: Local mailbox of the rows.

        Returns:
            Number of rows marked COMPLETE.

        Raises:
            MessagingError: Remote failures propagate to the caller.
        """
        if not messages:
            return 0

        await folder.fetch(messages, FetchProfile.of(FetchItem.STRUCTURE))

        loaded = 0
        for remote in messages:
            row = await self.repo.get_message_by_server_id(mailbox.id, remote.uid)
            if row is None:
                # Deleted locally while we were fetching
                continue

            viewables = [p for p in remote.parts if p.is_viewable]
            attachments = [_attachment_for(p) for p in remote.parts if not p.is_viewable]
            for part in viewables:
                await folder.fetch([remote], FetchProfile.for_part(part))

            text = [p.content for p in viewables if p.content_type == "text/plain" and p.content]
            html = [p.content for p in viewables if p.content_type == "text/html" and p.content]

            await self.repo.save_attachments(row.id, attachments)
            await self.repo.update_message(
                row.id,
                body_text="\n".join(text),
                body_html="\n".join(html),
                load_state=LoadState.COMPLETE,
            )
            loaded += 1

        logger.debug(
            f"Loaded {loaded} message bodies in {mailbox.server_id} ({account.name})"
        )
        return loaded
