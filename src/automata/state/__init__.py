from automata.state.task_log import TaskLog
from automata.state.task_store import TaskStore, TaskStoreError
from automata.state.thread_index import ThreadIndex

__all__ = ["TaskLog", "TaskStore", "TaskStoreError", "ThreadIndex"]
