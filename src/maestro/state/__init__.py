from maestro.state.store import OrchestrationStore
from maestro.state.workspaces import Workspace, WorkspaceManager

__all__ = ["OrchestrationStore", "Workspace", "WorkspaceManager"]
