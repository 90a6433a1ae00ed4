"""
Local task list for meeting follow-up tasks.

The task_management route of a follow-up plan lands here: every action item
from a meeting becomes a task with its assignee, due date and priority, and
stays open until someone completes it.

Storage format:
    tasks.json - a JSON array of task objects

Usage:
    store = TaskStore()
    task = store.add_task(task_follow_up, meeting_id="evt123", meeting_title="Sprint review")
    store.complete_task(task["id"])
    open_tasks = store.get_open_tasks(assignee="dana@example.com")
"""

import json
import logging
import threading
from pathlib import Path
from typing import List, Optional

from followthrough.models import TaskFollowUp, utcnow

logger = logging.getLogger(__name__)

DEFAULT_TASKS_PATH = "./tasks.json"


class TaskStore:
    """JSON file-based storage for follow-up tasks."""

    def __init__(self, store_path: str = DEFAULT_TASKS_PATH):
        self.store_path = Path(store_path)
        self._lock = threading.Lock()
        self._ensure_store_exists()

    def _ensure_store_exists(self) -> None:
        if not self.store_path.exists():
            self.store_path.write_text("[]")
            logger.info("Created task store at %s", self.store_path)

    def _load(self) -> List[dict]:
        try:
            data = json.loads(self.store_path.read_text())
            return data if isinstance(data, list) else []
        except (json.JSONDecodeError, IOError) as e:
            logger.error("Failed to load task store: %s", e)
            return []

    def _save(self, tasks: List[dict]) -> None:
        self.store_path.write_text(json.dumps(tasks, indent=2, default=str))

    def add_task(
        self,
        task: TaskFollowUp,
        meeting_id: str,
        meeting_title: str = "",
    ) -> dict:
        """
        Store a follow-up task. Adding the same task id twice updates it
        in place instead of duplicating it.

        Returns:
            The stored task dict
        """
        record = {
            "id": task.id,
            "action_item_id": task.action_item_id,
            "title": task.title,
            "description": task.description,
            "assignee": task.assignee,
            "due_date": task.due_date,
            "priority": task.priority.value,
            "dependencies": task.dependencies,
            "tags": task.tags,
            "meeting_id": meeting_id,
            "meeting_title": meeting_title,
            "status": "open",
            "created_at": utcnow().isoformat(),
            "completed_at": None,
        }

        with self._lock:
            tasks = [t for t in self._load() if t.get("id") != task.id]
            tasks.append(record)
            self._save(tasks)

        logger.info("Added task '%s' for %s", task.title, task.assignee or "unassigned")
        return record

    def get_task(self, task_id: str) -> Optional[dict]:
        for t in self._load():
            if t.get("id") == task_id:
                return t
        return None

    def get_open_tasks(self, assignee: Optional[str] = None) -> List[dict]:
        tasks = [t for t in self._load() if t.get("status") == "open"]
        if assignee:
            tasks = [t for t in tasks if (t.get("assignee") or "").lower() == assignee.lower()]
        return tasks

    def get_tasks_for_meeting(self, meeting_id: str) -> List[dict]:
        return [t for t in self._load() if t.get("meeting_id") == meeting_id]

    def complete_task(self, task_id: str) -> bool:
        """Mark a task done. Returns False if not found."""
        with self._lock:
            tasks = self._load()
            for t in tasks:
                if t.get("id") == task_id:
                    t["status"] = "completed"
                    t["completed_at"] = utcnow().isoformat()
                    self._save(tasks)
                    logger.info("Completed task %s", task_id)
                    return True
        logger.warning("Task not found: %s", task_id)
        return False
