import json
import logging
import os
import re
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from .conversation import MemberConversation
from .errors import CorruptSnapshotError, UnknownMemberError
from .models import MessageReference

logger = logging.getLogger(__name__)


class ConversationStateStore:
    """
    Per-run mapping from member to conversation, partitioned by member key.

    Snapshots are JSON-compatible dicts:
        {"run_id": str, "members": {member_id: MemberConversation.to_dict()}}
    """

    def __init__(self, run_id: str = None):
        self.run_id = run_id
        self._conversations: Dict[str, MemberConversation] = {}

    def __contains__(self, member_id: str) -> bool:
        return member_id in self._conversations

    def __len__(self):
        return len(self._conversations)

    def get(self, member_id: str) -> MemberConversation:
        try:
            return self._conversations[member_id]
        except KeyError:
            raise UnknownMemberError(f"{member_id} is not part of run {self.run_id}") from None

    def put(self, member_id: str, conversation: MemberConversation):
        if conversation.member_id != member_id:
            raise ValueError(f"Conversation of {conversation.member_id} stored under {member_id}")
        self._conversations[member_id] = conversation

    def conversations(self) -> List[MemberConversation]:
        return list(self._conversations.values())

    def live_references(self) -> List[Tuple[str, str, MessageReference]]:
        return [(member_id, phase, ref)
                for member_id, conversation in self._conversations.items()
                for phase, ref in conversation.live_references()]

    def snapshot(self) -> dict:
        return {
            "run_id": self.run_id,
            "members": {member_id: c.to_dict() for member_id, c in self._conversations.items()},
        }

    def restore(self, snapshot: dict):
        """Replace the store content with a snapshot.

        :raises CorruptSnapshotError: if the snapshot cannot be decoded or
            would not round-trip exactly.
        """
        try:
            run_id = snapshot["run_id"]
            conversations = {}
            for member_id, data in snapshot["members"].items():
                conversation = MemberConversation.from_dict(data)
                if conversation.member_id != member_id:
                    raise ValueError(f"entry {member_id} holds the conversation of {conversation.member_id}")
                conversations[member_id] = conversation
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise CorruptSnapshotError(f"Cannot restore conversation snapshot: {e!r}") from e

        restored = {"run_id": run_id, "members": {m: c.to_dict() for m, c in conversations.items()}}
        if restored != snapshot:
            raise CorruptSnapshotError("Conversation snapshot contains unexpected fields")

        self.run_id = run_id
        self._conversations = conversations
        logger.info(f"Restored {len(conversations)} conversations of run {run_id}")


class JsonFileCheckpoint:
    """Keeps the latest snapshot of each standup as <directory>/<key>.json."""

    def __init__(self, directory):
        self.directory = Path(directory)

    def _path(self, key: str) -> Path:
        safe_key = re.sub(r"[^A-Za-z0-9_.-]", "_", key)
        return self.directory / f"{safe_key}.json"

    def save(self, key: str, snapshot: dict):
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self._path(key)
        tmp_path = path.with_suffix(".json.tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(snapshot, f, indent=2)
        os.replace(tmp_path, path)

    def load(self, key: str) -> Optional[dict]:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            with open(path, encoding="utf-8") as f:
                return json.load(f)
        except json.JSONDecodeError as e:
            raise CorruptSnapshotError(f"Checkpoint {path} is not valid JSON: {e}") from e
