"""Image promotion: format conversion and final placement in the store."""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
from pathlib import Path

from prestage.config import NodeConfig
from prestage.errors import ConversionError
from prestage.execution import LocalExecutor

logger = logging.getLogger(__name__)


def partial_path_for(dest_path: str | Path) -> Path:
    dest_path = Path(dest_path)
    return dest_path.with_name(f".{dest_path.name}.partial")


class ImageConverter:
    """Converts a verified download into the store format.

    The result is written next to the destination, given its final
    ownership and mode, then renamed into place, so the destination path
    only ever holds a complete image.
    """

    def __init__(self, node: NodeConfig | None = None, executor: LocalExecutor | None = None):
        self.node = node or NodeConfig()
        self.executor = executor or LocalExecutor()

    def convert_command(self, src: str | Path, dest: str | Path, source_format: str) -> list[str]:
        return [
            self.node.qemu_img_path,
            "convert",
            "-f", source_format,
            "-O", self.node.target_format,
            str(src),
            str(dest),
        ]

    def apply_permissions(self, path: str | Path) -> None:
        if self.node.owner or self.node.group:
            shutil.chown(path, user=self.node.owner, group=self.node.group)
        os.chmod(path, self.node.mode)

    async def promote(self, src: str | Path, dest: str | Path, source_format: str) -> Path:
        dest = Path(dest)
        dest.parent.mkdir(parents=True, exist_ok=True)
        partial = partial_path_for(dest)
        partial.unlink(missing_ok=True)
        try:
            if source_format == self.node.target_format:
                logger.info(f"{src} already {source_format}, copying into store")
                await asyncio.to_thread(shutil.copyfile, src, partial)
            else:
                result = await self.executor.run(self.convert_command(src, partial, source_format))
                if not result.success:
                    raise ConversionError(
                        f"qemu-img convert failed ({result.returncode}): {result.output_tail}",
                        context={"source": str(src)},
                    )
            self.apply_permissions(partial)
            os.replace(partial, dest)
        except (OSError, LookupError) as e:
            # shutil.chown raises LookupError for unknown users/groups
            raise ConversionError(f"Failed to place {dest}: {e}", context={"source": str(src)})
        finally:
            partial.unlink(missing_ok=True)
        logger.info(f"Promoted {src} -> {dest} ({self.node.target_format}, mode {oct(self.node.mode)})")
        return dest
