from .analytics import OrderAnalyticsService
from .asking_tasks import AskingTaskService, normalize_stage_details
from .catalog import CatalogService
from .order_status import OrderStatusService, revision_order_number
from .reconciler import ReconcilePlan, ReconcilerService, ServiceChange, ServiceQuantity
from .task_lifecycle import TaskLifecycleService, time_spent

__all__ = [
    'AskingTaskService',
    'CatalogService',
    'OrderAnalyticsService',
    'OrderStatusService',
    'ReconcilePlan',
    'ReconcilerService',
    'ServiceChange',
    'ServiceQuantity',
    'TaskLifecycleService',
    'normalize_stage_details',
    'revision_order_number',
    'time_spent',
]
