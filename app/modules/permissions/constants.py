"""
Recursos, acciones y matriz de permisos por rol
"""
import enum

from app.modules.business.models import StaffRole


class Resource(enum.Enum):
    BILLS = "BILLS"
    PAYMENTS = "PAYMENTS"
    APPROVALS = "APPROVALS"
    CUSTOMERS = "CUSTOMERS"
    SETTINGS = "SETTINGS"
    AUDIT_LOGS = "AUDIT_LOGS"


class Action(enum.Enum):
    CREATE = "CREATE"
    READ = "READ"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    APPROVE = "APPROVE"
    VOID = "VOID"
    EXPORT = "EXPORT"
    MANAGE = "MANAGE"


ALL_ACTIONS = frozenset(Action)
READ_ONLY = frozenset({Action.READ})

# OWNER no aparece: el dueño tiene todos los permisos
ROLE_PERMISSIONS = {
    StaffRole.ADMIN: {resource: ALL_ACTIONS for resource in Resource},
    StaffRole.MANAGER: {
        Resource.BILLS: frozenset({Action.CREATE, Action.READ, Action.UPDATE, Action.VOID, Action.DELETE}),
        Resource.PAYMENTS: frozenset({Action.CREATE, Action.READ, Action.UPDATE}),
        Resource.APPROVALS: READ_ONLY,
        Resource.CUSTOMERS: frozenset({Action.CREATE, Action.READ, Action.UPDATE}),
        Resource.SETTINGS: READ_ONLY,
    },
    StaffRole.ACCOUNTANT: {
        Resource.BILLS: READ_ONLY,
        Resource.PAYMENTS: frozenset({Action.CREATE, Action.READ, Action.UPDATE}),
        Resource.APPROVALS: READ_ONLY,
        Resource.CUSTOMERS: READ_ONLY,
        Resource.AUDIT_LOGS: READ_ONLY,
    },
    StaffRole.CASHIER: {
        Resource.BILLS: frozenset({Action.CREATE, Action.READ, Action.UPDATE}),
        Resource.PAYMENTS: frozenset({Action.CREATE, Action.READ}),
        Resource.CUSTOMERS: frozenset({Action.CREATE, Action.READ}),
    },
    StaffRole.VIEWER: {
        Resource.BILLS: READ_ONLY,
        Resource.PAYMENTS: READ_ONLY,
        Resource.APPROVALS: READ_ONLY,
        Resource.CUSTOMERS: READ_ONLY,
    },
}
