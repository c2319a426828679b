from trashsync.models.instance_model import ServiceInstance
from trashsync.models.template_model import TrashTemplate
from trashsync.models.cache_model import TrashCache
from trashsync.models.backup_model import TrashBackup
from trashsync.models.history_model import TemplateDeploymentHistory, TrashSyncHistory

__all__ = [
    "ServiceInstance",
    "TrashTemplate",
    "TrashCache",
    "TrashBackup",
    "TemplateDeploymentHistory",
    "TrashSyncHistory",
]
