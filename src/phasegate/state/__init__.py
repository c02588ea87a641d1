from phasegate.state.store import StateStoreError, WorkItemStore

__all__ = ["StateStoreError", "WorkItemStore"]
