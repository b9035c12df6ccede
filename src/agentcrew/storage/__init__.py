from agentcrew.storage.task_logs import TaskLogStore

__all__ = ['TaskLogStore']
