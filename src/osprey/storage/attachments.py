# =============================================================================
# Attachment Files
# =============================================================================
# Downloaded attachment content lives on disk, one directory per message:
#   <data dir>/attachments/<account id>/<message id>/<filename>
#
# The sync engine never downloads content itself; it only has to clean up
# when it deletes a message.
# =============================================================================

import logging
import shutil
from pathlib import Path

from osprey.config import Config

logger = logging.getLogger(__name__)


class AttachmentStore:
    """
    Locates and removes attachment files.

    Attributes:
        base_dir: Root of the attachment tree.
    """

    def __init__(self, base_dir: Path | None = None) -> None:
        self.base_dir = base_dir or Config.attachments_dir()

    def message_dir(self, account_id: int, message_id: int) -> Path:
        return self.base_dir / str(account_id) / str(message_id)

    def delete_all_attachment_files(self, account_id: int, message_id: int) -> None:
        """Remove every file stored for a message. Missing files are fine."""
        path = self.message_dir(account_id, message_id)
        if path.exists():
            logger.debug(f"Removing attachment files in {path}")
            shutil.rmtree(path, ignore_errors=True)
