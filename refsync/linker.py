"""
Linker for installed references

Manages symbolic links from agent skill directories to reference files
in the local reference store.
"""

import logging
import os
from pathlib import Path
from typing import List, Optional

from .config import Config


logger = logging.getLogger(__name__)

LINK_FILE_NAME = "SKILL.md"


class Linker:
    """
    Manages symbolic links for installed references.

    Each configured agent skill directory receives ``<stem>/SKILL.md``
    pointing at the reference file.
    """

    def __init__(self, config: Config, agent_dirs: Optional[List[Path]] = None):
        """
        Initialize the linker.

        Args:
            config: Configuration object
            agent_dirs: Agent skill directories. Defaults to the configured ones.
        """
        self.config = config
        self.agent_dirs = [Path(d) for d in (agent_dirs if agent_dirs is not None else config.agent_skill_dirs)]

    def _get_link_path(self, agent_dir: Path, stem: str) -> Path:
        return agent_dir / stem / LINK_FILE_NAME

    def link_reference(self, stem: str, source_path: Path) -> List[Path]:
        """
        Link a reference file into every agent directory.

        Args:
            stem: Reference name without extension
            source_path: Reference file to link to

        Returns:
            Link paths that were created
        """
        created = []
        for agent_dir in self.agent_dirs:
            link_path = self._get_link_path(agent_dir, stem)
            link_path.parent.mkdir(parents=True, exist_ok=True)

            if link_path.exists() or link_path.is_symlink():
                link_path.unlink()

            try:
                relative_source = os.path.relpath(source_path, link_path.parent)
                os.symlink(relative_source, link_path)
            except (OSError, NotImplementedError):
                # Fall back to absolute link if relative fails
                try:
                    os.symlink(source_path, link_path)
                except OSError as e:
                    logger.warning(f"Could not link {stem} into {agent_dir}: {e}")
                    continue
            created.append(link_path)

        return created

    def unlink_reference(self, stem: str) -> int:
        """
        Remove a reference's link from every agent directory.

        Args:
            stem: Reference name without extension

        Returns:
            Number of links removed
        """
        removed = 0
        for agent_dir in self.agent_dirs:
            link_path = self._get_link_path(agent_dir, stem)
            if not (link_path.is_symlink() or link_path.exists()):
                continue

            parent = link_path.parent
            link_path.unlink()
            removed += 1
            if parent.exists() and not any(parent.iterdir()):
                parent.rmdir()

        if removed:
            logger.debug(f"Removed {removed} agent link(s) for {stem}")
        return removed

    def check_broken_links(self) -> List[Path]:
        """
        Find links whose target no longer exists.

        Returns:
            Paths of broken links
        """
        broken = []
        for agent_dir in self.agent_dirs:
            if not agent_dir.exists():
                continue
            for item in agent_dir.iterdir():
                link_path = item / LINK_FILE_NAME
                if link_path.is_symlink():
                    target = (link_path.parent / os.readlink(link_path)).resolve()
                    if not target.exists():
                        broken.append(link_path)
        return broken
