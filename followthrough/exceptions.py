"""Errors raised by FollowThrough components."""


class FollowThroughError(Exception):
    """Base class for all FollowThrough errors."""


class SessionNotFoundError(FollowThroughError):
    def __init__(self, session_id: str):
        super().__init__(f"Workflow session not found: {session_id}")
        self.session_id = session_id


class SessionExistsError(FollowThroughError):
    def __init__(self, session_id: str):
        super().__init__(f"Workflow session already exists: {session_id}")
        self.session_id = session_id


class InvalidStageTransition(FollowThroughError):
    def __init__(self, current: str, target: str):
        super().__init__(f"Cannot move workflow from '{current}' to '{target}'")
        self.current = current
        self.target = target


class WorkflowStepError(FollowThroughError):
    """A workflow phase produced an unusable result."""
