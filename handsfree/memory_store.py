"""Conversation persistence: SQLite for messages, files for spoken audio chunks."""

from __future__ import annotations

import json
import logging
import shutil
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from handsfree.conversation import USER, ChatMessage, Conversation, fallback_title


class MemoryStore:
    """Append-only store for conversations, messages and audio chunk references."""

    def __init__(self, db_path: Path, audio_dir: Path, logger: logging.Logger, cfg: Dict[str, Any]):
        self.db_path = Path(db_path)
        self.audio_dir = Path(audio_dir)
        self.logger = logger
        self.cfg = cfg.get("memory", {})
        self.enabled = self.cfg.get("enabled", True)
        self._lock = threading.Lock()

        if self.enabled:
            self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=5.0)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self):
        """Initialize SQLite schema."""
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self.audio_dir.mkdir(parents=True, exist_ok=True)
            conn = self._connect()

            # Check database integrity first
            try:
                result = conn.execute("PRAGMA integrity_check").fetchone()
                if result and result[0] != "ok":
                    self.logger.warning("db_integrity_issue %s", json.dumps({"result": result[0]}))
                    conn.close()
                    backup_path = self.db_path.with_suffix(".db.backup")
                    shutil.copy2(self.db_path, backup_path)
                    self.db_path.unlink(missing_ok=True)
                    self.logger.warning("db_reinitializing %s", json.dumps({
                        "reason": "corruption", "backup": str(backup_path)
                    }))
                    conn = self._connect()
            except sqlite3.DatabaseError as e:
                self.logger.warning("db_integrity_check_failed %s", json.dumps({"error": str(e)}))

            conn.execute("PRAGMA journal_mode=WAL")

            conn.execute("""
                CREATE TABLE IF NOT EXISTS conversations (
                    id TEXT PRIMARY KEY,
                    title TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS messages (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    id TEXT NOT NULL UNIQUE,
                    conversation_id TEXT NOT NULL,
                    role TEXT NOT NULL,
                    content TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS audio_chunks (
                    conversation_id TEXT NOT NULL,
                    message_id TEXT NOT NULL,
                    sequence_index INTEGER NOT NULL,
                    path TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    PRIMARY KEY (message_id, sequence_index)
                )
            """)

            conn.commit()
            conn.close()
            self.logger.info("memory_initialized %s", json.dumps({"db": str(self.db_path)}))
        except (sqlite3.Error, OSError) as e:
            self.logger.error("memory_init_failed %s", json.dumps({"error": str(e)}))
            self.enabled = False

    # ---- writes ----

    def create_conversation(self, conversation: Conversation):
        if not self.enabled:
            return
        now = datetime.now().isoformat()
        try:
            with self._lock:
                conn = self._connect()
                with conn:
                    conn.execute(
                        "INSERT OR IGNORE INTO conversations (id, title, created_at, updated_at) VALUES (?, ?, ?, ?)",
                        (conversation.id, conversation.title, conversation.created_at, now),
                    )
                conn.close()
        except sqlite3.Error as e:
            self.logger.error("conversation_create_failed %s", json.dumps({"error": str(e)}))

    def append_message(self, conversation_id: str, message: ChatMessage):
        """Insert, or update the role/content of a message already stored."""
        if not self.enabled:
            return
        now = datetime.now().isoformat()
        try:
            with self._lock:
                conn = self._connect()
                with conn:
                    conn.execute(
                        "INSERT OR IGNORE INTO conversations (id, title, created_at, updated_at) VALUES (?, NULL, ?, ?)",
                        (conversation_id, now, now),
                    )
                    conn.execute("""
                        INSERT INTO messages (id, conversation_id, role, content, created_at)
                        VALUES (?, ?, ?, ?, ?)
                        ON CONFLICT(id) DO UPDATE SET role = excluded.role, content = excluded.content
                    """, (message.id, conversation_id, message.role, message.content, message.created_at))
                    if message.role == USER and message.content.strip():
                        conn.execute(
                            "UPDATE conversations SET title = ? WHERE id = ? AND title IS NULL",
                            (fallback_title(message.content), conversation_id),
                        )
                    conn.execute("UPDATE conversations SET updated_at = ? WHERE id = ?", (now, conversation_id))
                conn.close()

            self.logger.debug("memory_message_saved %s", json.dumps({
                "conversation": conversation_id, "role": message.role, "chars": len(message.content)
            }))
        except sqlite3.Error as e:
            self.logger.error("memory_add_failed %s", json.dumps({"error": str(e)}))

    def save_audio_chunk(self, conversation_id: str, message_id: str, sequence_index: int,
                         data: bytes, ext: str = "wav") -> Optional[str]:
        """Write one spoken chunk and record it. Returns the path relative to the audio dir."""
        if not self.enabled:
            return None
        rel_path = Path(conversation_id) / f"{message_id}-{sequence_index:03d}.{ext}"
        try:
            target = self.audio_dir / rel_path
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
            with self._lock:
                conn = self._connect()
                with conn:
                    conn.execute("""
                        INSERT OR REPLACE INTO audio_chunks
                            (conversation_id, message_id, sequence_index, path, created_at)
                        VALUES (?, ?, ?, ?, ?)
                    """, (conversation_id, message_id, sequence_index, str(rel_path),
                          datetime.now().isoformat()))
                conn.close()
        except (sqlite3.Error, OSError) as e:
            self.logger.error("audio_chunk_save_failed %s", json.dumps({
                "message": message_id, "index": sequence_index, "error": str(e)
            }))
            return None
        return str(rel_path)

    # ---- reads ----

    def audio_paths(self, conversation_id: str, message_id: str) -> List[str]:
        if not self.enabled:
            return []
        try:
            conn = self._connect()
            rows = conn.execute("""
                SELECT path FROM audio_chunks
                WHERE conversation_id = ? AND message_id = ?
                ORDER BY sequence_index ASC
            """, (conversation_id, message_id)).fetchall()
            conn.close()
            return [r["path"] for r in rows]
        except sqlite3.Error as e:
            self.logger.error("audio_paths_failed %s", json.dumps({"error": str(e)}))
            return []

    def load_conversation(self, conversation_id: str) -> Optional[Conversation]:
        if not self.enabled:
            return None
        try:
            conn = self._connect()
            row = conn.execute(
                "SELECT id, title, created_at FROM conversations WHERE id = ?", (conversation_id,)
            ).fetchone()
            if row is None:
                conn.close()
                return None
            messages = conn.execute("""
                SELECT id, role, content, created_at FROM messages
                WHERE conversation_id = ? ORDER BY seq ASC
            """, (conversation_id,)).fetchall()
            chunks = conn.execute("""
                SELECT message_id, path FROM audio_chunks
                WHERE conversation_id = ? ORDER BY message_id, sequence_index ASC
            """, (conversation_id,)).fetchall()
            conn.close()
        except sqlite3.Error as e:
            self.logger.error("conversation_load_failed %s", json.dumps({"error": str(e)}))
            return None

        conversation = Conversation(id=row["id"], title=row["title"], created_at=row["created_at"])
        for m in messages:
            conversation.messages.append(ChatMessage(
                id=m["id"], role=m["role"], content=m["content"], created_at=m["created_at"]
            ))
        for c in chunks:
            conversation.audio_paths.setdefault(c["message_id"], []).append(c["path"])
        return conversation

    def latest_conversation(self, max_age_hours: float = 24) -> Optional[str]:
        """Most recently active conversation, if within the age limit."""
        if not self.enabled:
            return None
        try:
            conn = self._connect()
            row = conn.execute(
                "SELECT id, updated_at FROM conversations ORDER BY updated_at DESC LIMIT 1"
            ).fetchone()
            conn.close()
        except sqlite3.Error as e:
            self.logger.error("get_latest_conversation_failed %s", json.dumps({"error": str(e)}))
            return None

        if not row:
            return None
        age_hours = (datetime.now() - datetime.fromisoformat(row["updated_at"])).total_seconds() / 3600
        if age_hours > max_age_hours:
            return None
        self.logger.info("conversation_candidate %s", json.dumps({
            "conversation_id": row["id"], "age_hours": round(age_hours, 2)
        }))
        return row["id"]

    def get_conversation_info(self, conversation_id: str) -> Dict[str, Any]:
        if not self.enabled:
            return {}
        try:
            conn = self._connect()
            row = conn.execute("""
                SELECT COUNT(*) AS message_count, MIN(created_at) AS started, MAX(created_at) AS last_activity
                FROM messages WHERE conversation_id = ?
            """, (conversation_id,)).fetchone()
            title = conn.execute(
                "SELECT title FROM conversations WHERE id = ?", (conversation_id,)
            ).fetchone()
            conn.close()
        except sqlite3.Error as e:
            self.logger.error("get_conversation_info_failed %s", json.dumps({"error": str(e)}))
            return {}
        return {
            "message_count": row["message_count"],
            "started": row["started"],
            "last_activity": row["last_activity"],
            "title": title["title"] if title else None,
        }
