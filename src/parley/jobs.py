"""Scheduled jobs for parley.

Expiry Strategy:
- Run periodically (or on-demand via ``parley jobs sweep``)
- Expired messages are soft-deleted like a delete-for-everyone: the row
  stays, ``deleted_at`` is set, pins and unread counters are repaired
- Optionally write the expired messages to JSONL first, one file per
  conversation, so their content survives outside the live store
"""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path

from . import messages
from .service import MessagingService, get_messaging_service, run_store

logger = logging.getLogger(__name__)


async def sweep_expired_messages(
    service: MessagingService | None = None,
    archive_path: str | None = None,
    dry_run: bool = False,
    batch_size: int = 1000,
    now: str | None = None,
) -> int:
    """
    Expire messages whose ``expires_at`` has passed.

    Args:
        service: Service used to emit ``message:deleted`` (default: global)
        archive_path: If set, write expired messages to JSONL files here
        dry_run: If True, just count without modifying
        batch_size: Number of messages to process at a time
        now: Override the current time (ISO-8601)

    Returns:
        Number of messages expired (or that would be, for a dry run)
    """
    expired = await run_store(messages.list_expired, now, batch_size)

    if not expired:
        return 0

    if dry_run:
        return len(expired)

    if archive_path:
        archive_expired_messages(expired, archive_path)

    service = service or get_messaging_service()
    return len(await service.expire_messages(now=now, limit=batch_size))


def archive_expired_messages(expired: list[dict], archive_path: str) -> list[str]:
    """
    Archive messages to JSONL files, one per conversation.

    Returns the written file paths.
    """
    if not expired:
        return []

    path = Path(archive_path)
    path.mkdir(parents=True, exist_ok=True)

    by_conversation: dict[str, list[dict]] = {}
    for message in expired:
        by_conversation.setdefault(message["conversation_id"], []).append(message)

    timestamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
    written = []

    for conversation_id, conversation_messages in by_conversation.items():
        filepath = path / f"{conversation_id}_{timestamp}.jsonl"
        with open(filepath, "a") as f:
            for message in conversation_messages:
                f.write(json.dumps(message, default=str) + "\n")
        written.append(str(filepath))
        logger.info("Archived %d messages to %s", len(conversation_messages), filepath)

    return written


def load_archive(archive_file: str) -> list[dict]:
    """Read messages back from a JSONL archive file."""
    loaded = []

    with open(archive_file) as f:
        for line in f:
            if line.strip():
                loaded.append(json.loads(line))

    return loaded
