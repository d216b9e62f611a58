import os
import json
import logging
from pathlib import Path
from typing import Dict

from .base import BaseStorage
from app.core.exceptions import TransportError

logger = logging.getLogger(__name__)


class InternalStorage(BaseStorage):
    """Local-disk object store; writes ``<root>/<key>`` plus a metadata sidecar."""

    METADATA_SUFFIX = ".metadata.json"

    def __init__(self, root: Path):
        self.root = Path(root)

    def _resolve(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if os.path.commonpath([path, self.root.resolve()]) != str(self.root.resolve()):
            raise TransportError(f"Key escapes storage root: {key}")
        return path

    def put_object(self, key: str, body: bytes, content_type: str, metadata: Dict[str, str]) -> str:
        final_path = self._resolve(key)
        tmp_path = final_path.with_name(final_path.name + ".part")
        try:
            final_path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, "wb") as f:
                f.write(body)
            os.replace(tmp_path, final_path)
            sidecar = final_path.with_name(final_path.name + self.METADATA_SUFFIX)
            sidecar.write_text(json.dumps({"contentType": content_type, "metadata": metadata}))
        except OSError as e:
            raise TransportError(f"Local storage write failed: {e}") from e
        logger.info(f"Stored {final_path} ({len(body)} bytes)")
        return str(final_path)

    def delete_object(self, key: str) -> None:
        final_path = self._resolve(key)
        for path in (final_path, final_path.with_name(final_path.name + self.METADATA_SUFFIX)):
            if path.exists():
                os.remove(path)
