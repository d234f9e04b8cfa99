"""
Error taxonomy for the task tracker core.

There is no permission error here: callers check ``can()`` before
writing, and the HTTP layer turns a failed check into a 403.
"""


class TaskTrackerError(Exception):
    pass


class TransientSyncError(TaskTrackerError):
    """A live subscription reported a transport or backend fault."""


class AllocationFailure(TaskTrackerError):
    """The next task id could not be computed or claimed."""


class MalformedRecord(TaskTrackerError):
    def __init__(self, doc_id: str, reason: str):
        super().__init__(f"Malformed record '{doc_id}': {reason}")
        self.doc_id = doc_id
        self.reason = reason


class DocumentExists(TaskTrackerError):
    def __init__(self, collection: str, doc_id: str):
        super().__init__(f"{collection}/{doc_id} already exists")
        self.collection = collection
        self.doc_id = doc_id


class DocumentNotFound(TaskTrackerError):
    def __init__(self, collection: str, doc_id: str):
        super().__init__(f"{collection}/{doc_id} not found")
        self.collection = collection
        self.doc_id = doc_id


class InvalidTaskDates(TaskTrackerError, ValueError):
    """entryDate falls on a day before receivedDate."""
