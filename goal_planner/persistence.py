"""
Form-context persistence.

Append-only JSON files for audit trail and restart resilience.
"""

import json
import logging
import re
from pathlib import Path
from typing import Any, List, Optional, Tuple

from goal_planner.commands import AIFormContext

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r'[^A-Za-z0-9_.-]')
_REVISION_FILE = re.compile(r'^REV-(\d+)\.json$')


def _safe_name(value: Any) -> str:
    name = _UNSAFE_CHARS.sub('_', str(value))
    if not name.strip('.'):
        raise ValueError(f"Unusable identifier for storage: {value!r}")
    return name


class FormContextStore:
    """
    Manages revision-by-revision JSON persistence of AIFormContext.

    Layout:
        outputs/form_contexts/USER-42/session-abc123/
            REV-0001.json
            REV-0002.json
            ...

    Design:
    - Append-only (never overwrite)
    - One file per applied change
    - Latest revision is the current context
    """

    def __init__(self, base_dir: str = "outputs/form_contexts"):
        """
        Args:
            base_dir: Base directory for all form contexts
        """
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)
        logger.info(f"FormContextStore initialized: {self.base_dir}")

    def _session_dir(self, user_id, session_id) -> Path:
        return self.base_dir / f"USER-{_safe_name(user_id)}" / _safe_name(session_id)

    def _revisions(self, session_dir: Path) -> List[Tuple[int, Path]]:
        """Revision files ordered by revision number"""
        if not session_dir.exists():
            return []
        found = []
        for path in session_dir.glob("REV-*.json"):
            match = _REVISION_FILE.match(path.name)
            if match:
                found.append((int(match.group(1)), path))
        return sorted(found)

    def save_form_context(self, context: AIFormContext) -> str:
        """
        Save context as the next revision.

        Returns:
            str: Absolute path to saved file

        Raises:
            FileExistsError: If the revision file already exists (concurrent writer)
        """
        session_dir = self._session_dir(context.user_id, context.session_id)
        session_dir.mkdir(parents=True, exist_ok=True)

        revision = self.get_revision_count(context.user_id, context.session_id) + 1
        filepath = session_dir / f"REV-{revision:04d}.json"

        if filepath.exists():
            raise FileExistsError(
                f"Revision file already exists: {filepath}. "
                f"This indicates two writers on one session."
            )

        with open(filepath, 'w') as f:
            json.dump(context.to_json(), f, indent=2, ensure_ascii=False)

        logger.debug(f"Saved revision {revision} for {context.user_id}/{context.session_id}")
        return str(filepath.absolute())

    def load_form_context(self, user_id, session_id) -> Optional[AIFormContext]:
        """
        Load the latest revision.

        Returns:
            AIFormContext if the session has been saved, None otherwise
        """
        session_dir = self._session_dir(user_id, session_id)
        revisions = self._revisions(session_dir)

        if not revisions:
            logger.debug(f"No saved context for {user_id}/{session_id}")
            return None

        latest_file = revisions[-1][1]
        logger.info(f"Loading latest context for {user_id}/{session_id}: {latest_file.name}")

        with open(latest_file, 'r') as f:
            data = json.load(f)

        return AIFormContext.from_json(data)

    def get_revision_count(self, user_id, session_id) -> int:
        """Highest saved revision number (0 when nothing is saved)"""
        revisions = self._revisions(self._session_dir(user_id, session_id))
        return revisions[-1][0] if revisions else 0
