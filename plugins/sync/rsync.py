"""
rsync plugin used to apply staged restore data onto the live mount.
"""

import shutil
from pathlib import Path
from typing import Sequence

from core.errors import RestoreStepError
from lib.commands import CommandError, run_command
from plugins.base import MirrorPlugin


class RsyncPlugin(MirrorPlugin):
    """Mirror adapter running `rsync -a --delete`."""

    def __init__(self, binary: str = "rsync"):
        super().__init__({"binary": binary})
        self.binary = binary

    @property
    def name(self) -> str:
        return "RsyncPlugin"

    def is_available(self) -> bool:
        return shutil.which(self.binary) is not None

    def mirror(self, source: Path, target: Path, exclude: Sequence[str] = ()) -> None:
        """
        Mirror source into target, deleting anything not present in source.

        Raises:
            RestoreStepError: If rsync fails
        """
        args = [self.binary, "-a", "--delete"]
        for pattern in exclude:
            args.append(f"--exclude={pattern}")
        # Trailing slashes copy directory contents rather than the directory
        args.extend([f"{str(source).rstrip('/')}/", f"{str(target).rstrip('/')}/"])

        self.logger.info(f"Mirroring {source} onto {target}")
        try:
            run_command(args)
        except CommandError as e:
            raise RestoreStepError(f"failed to apply restored data: {e}") from e
