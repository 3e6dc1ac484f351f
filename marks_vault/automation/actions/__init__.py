"""Action handlers dispatched by the task executor."""
from marks_vault.automation.actions.backup import BackupHandler
from marks_vault.automation.actions.base import ActionHandler
from marks_vault.automation.actions.custom import CustomActionHandler
from marks_vault.automation.actions.organize import OrganizeHandler
from marks_vault.automation.actions.push import PushHandler

__all__ = [
    "ActionHandler",
    "BackupHandler",
    "CustomActionHandler",
    "OrganizeHandler",
    "PushHandler",
]
