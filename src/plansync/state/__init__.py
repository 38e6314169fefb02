from plansync.state.progress import LockTimeout, ProgressStore, ProgressStoreError, SaveResult

__all__ = ["LockTimeout", "ProgressStore", "ProgressStoreError", "SaveResult"]
