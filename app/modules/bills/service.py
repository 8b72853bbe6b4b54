"""
Servicio del ciclo de vida de facturas

Cada operación que muta una factura corre como una unidad atómica:
bloqueo de la fila, validación de estado, cambio, registro en el historial y
commit. La unidad se reintenta ante contención de locks.
"""

import logging
from datetime import date
from decimal import Decimal
from typing import Optional, List, Dict, Any
from uuid import UUID

from fastapi import HTTPException, status
from sqlalchemy import select, func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.common.exceptions import (
    ValidationError, InvalidStateError, NotFoundError
)
from app.common.mixins import utcnow
from app.common.money import ZERO, quantize
from app.common.retry import run_with_retry, apply_lock_timeout
from app.core.config import settings
from app.modules.bills.calculator import compute_bill_totals
from app.modules.bills.models import (
    Bill, BillItem, BillStatus, ApprovalStatus,
    ALLOWED_TRANSITIONS, EDITABLE_STATUSES, MONETARY_FIELDS
)
from app.modules.bills.schemas import BillCreate, BillUpdate, BillList
from app.modules.business.sequences import SequenceService
from app.modules.business.service import BusinessService
from app.modules.customers.service import CustomerService
from app.modules.history.service import HistoryRecorder, to_jsonable
from app.modules.notifications.service import NotificationService
from app.modules.payments.models import PaymentAllocation
from app.modules.permissions.constants import Resource, Action
from app.modules.permissions.service import PermissionService

logger = logging.getLogger(__name__)


def assert_transition(bill: Bill, new_status: BillStatus) -> None:
    """Falla con InvalidStateError si la transición no está permitida"""
    if new_status not in ALLOWED_TRANSITIONS.get(bill.status, set()):
        raise InvalidStateError(
            f"La factura {bill.bill_number} no puede pasar de {bill.status.value} a {new_status.value}"
        )


def settle_status(bill: Bill) -> BillStatus:
    """Estado que corresponde al saldo de una factura que ya recibió pagos"""
    if bill.balance_amount <= 0:
        return BillStatus.PAID
    if bill.paid_amount > 0:
        return BillStatus.PARTIAL
    return bill.status


class BillService:
    """Servicio para gestión de facturas"""

    def __init__(
        self,
        db: Session,
        permissions: Optional[PermissionService] = None,
        notifier: Optional[NotificationService] = None
    ):
        self.db = db
        self.permissions = permissions or PermissionService(db)
        self.notifier = notifier or NotificationService()
        self.history = HistoryRecorder(db)

    # ----- lectura -----

    def get_bill(self, business_id: UUID, bill_id: UUID, include_deleted: bool = False) -> Bill:
        """Obtener factura por ID dentro del negocio"""
        query = self.db.query(Bill).filter(
            Bill.id == bill_id,
            Bill.business_id == business_id
        )
        if not include_deleted:
            query = query.filter(Bill.deleted_at.is_(None))
        bill = query.first()
        if not bill:
            raise NotFoundError("Factura no encontrada")
        return bill

    def lock_bill(self, business_id: UUID, bill_id: UUID) -> Bill:
        """
        Releer y bloquear la factura para escritura.

        ``populate_existing`` descarta cualquier copia en la sesión, así la
        validación siempre se hace sobre el saldo más reciente.
        """
        apply_lock_timeout(self.db)
        bill = self.db.execute(
            select(Bill)
            .where(
                Bill.id == bill_id,
                Bill.business_id == business_id,
                Bill.deleted_at.is_(None)
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if not bill:
            raise NotFoundError("Factura no encontrada")
        return bill

    def has_allocations(self, bill_id: UUID) -> bool:
        count = self.db.query(func.count(PaymentAllocation.id)).filter(
            PaymentAllocation.bill_id == bill_id
        ).scalar()
        return bool(count)

    def list_bills(
        self,
        business_id: UUID,
        limit: int = 100,
        offset: int = 0,
        status: Optional[BillStatus] = None,
        approval_status: Optional[ApprovalStatus] = None,
        customer_id: Optional[UUID] = None,
        has_balance: Optional[bool] = None,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None
    ) -> BillList:
        """Listar facturas con filtros"""
        query = self.db.query(Bill).filter(
            Bill.business_id == business_id,
            Bill.deleted_at.is_(None)
        )

        if status:
            query = query.filter(Bill.status == status)
        if approval_status:
            query = query.filter(Bill.approval_status == approval_status)
        if customer_id:
            query = query.filter(Bill.customer_id == customer_id)
        if has_balance is True:
            query = query.filter(Bill.balance_amount > 0)
        elif has_balance is False:
            query = query.filter(Bill.balance_amount <= 0)
        if start_date:
            query = query.filter(Bill.bill_date >= start_date)
        if end_date:
            query = query.filter(Bill.bill_date <= end_date)

        total = query.count()
        bills = query.order_by(Bill.bill_date.desc(), Bill.sequence_number.desc()).offset(offset).limit(limit).all()

        return BillList(items=bills, total=total, limit=limit, offset=offset)

    def get_bill_history(self, business_id: UUID, bill_id: UUID):
        """Historial completo de la factura, del más antiguo al más reciente"""
        self.get_bill(business_id, bill_id, include_deleted=True)
        return self.history.bill_history(bill_id)

    # ----- creación -----

    def create_bill(self, business_id: UUID, actor_id: UUID, bill_data: BillCreate) -> Bill:
        """
        Crear nueva factura en borrador

        Con ``idempotency_key`` una segunda llamada devuelve la factura ya
        creada en lugar de emitir otra.
        """
        self.permissions.require(actor_id, business_id, Resource.BILLS, Action.CREATE)

        if bill_data.idempotency_key:
            existing = self._find_by_idempotency_key(business_id, bill_data.idempotency_key)
            if existing:
                logger.info(f"Bill create replayed for key {bill_data.idempotency_key}: {existing.bill_number}")
                return existing

        if bill_data.due_date and bill_data.bill_date and bill_data.due_date < bill_data.bill_date:
            raise ValidationError(
                "La fecha de vencimiento no puede ser anterior a la fecha de la factura",
                field="due_date"
            )

        totals = compute_bill_totals(
            bill_data.items,
            discount_amount=bill_data.discount_amount,
            discount_percent=bill_data.discount_percent,
            shipping_cost=bill_data.shipping_cost,
            adjustment_amount=bill_data.adjustment_amount,
            round_off_amount=bill_data.round_off_amount,
        )

        business = BusinessService(self.db, self.permissions).get_business(business_id)
        if bill_data.customer_id:
            CustomerService(self.db).require_customer(bill_data.customer_id, business_id)
        if bill_data.parent_bill_id:
            self.get_bill(business_id, bill_data.parent_bill_id, include_deleted=True)

        def unit() -> Bill:
            bill_date = bill_data.bill_date or date.today()
            number, sequence = SequenceService(self.db).next_bill_number(
                business_id, business.bill_prefix or settings.DEFAULT_BILL_PREFIX, on=bill_date
            )
            bill = Bill(
                business_id=business_id,
                bill_number=number,
                sequence_number=sequence,
                customer_id=bill_data.customer_id,
                bill_date=bill_date,
                due_date=bill_data.due_date,
                status=BillStatus.DRAFT,
                approval_status=ApprovalStatus.NOT_REQUIRED,
                requires_approval=False,
                subtotal=totals.subtotal,
                discount_percent=bill_data.discount_percent,
                discount_amount=totals.discount_amount,
                tax_amount=totals.tax_amount,
                shipping_cost=totals.shipping_cost,
                adjustment_amount=totals.adjustment_amount,
                round_off_amount=totals.round_off_amount,
                total_amount=totals.total_amount,
                paid_amount=ZERO,
                balance_amount=totals.total_amount,
                currency=business.currency,
                notes=bill_data.notes,
                terms=bill_data.terms,
                internal_notes=bill_data.internal_notes,
                customer_notes=bill_data.customer_notes,
                billing_address=bill_data.billing_address,
                shipping_address=bill_data.shipping_address,
                is_recurring=bill_data.is_recurring,
                recurring_frequency=bill_data.recurring_frequency,
                parent_bill_id=bill_data.parent_bill_id,
                created_by=actor_id,
                idempotency_key=bill_data.idempotency_key,
            )
            bill.items = self._build_items(bill_data.items, totals.lines)

            self.db.add(bill)
            self.db.flush()

            self.history.record_bill_change(
                bill, "CREATED", actor_id,
                old_status=None, new_status=BillStatus.DRAFT,
                include_snapshot=True
            )
            self.db.commit()
            self.db.refresh(bill)
            return bill

        try:
            bill = run_with_retry(self.db, unit, "create_bill")
            logger.info(f"Bill {bill.bill_number} created for business {business_id} total={bill.total_amount}")
            return bill
        except IntegrityError:
            self.db.rollback()
            if bill_data.idempotency_key:
                existing = self._find_by_idempotency_key(business_id, bill_data.idempotency_key)
                if existing:
                    return existing
            logger.error("Integrity error creating bill", exc_info=True)
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Error creando factura"
            )
        except HTTPException:
            self.db.rollback()
            raise
        except Exception:
            self.db.rollback()
            logger.error("Unexpected error creating bill", exc_info=True)
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Error creando factura"
            )

    def _find_by_idempotency_key(self, business_id: UUID, key: str) -> Optional[Bill]:
        return self.db.query(Bill).filter(
            Bill.business_id == business_id,
            Bill.idempotency_key == key
        ).first()

    @staticmethod
    def _build_items(items_data, lines) -> List[BillItem]:
        items = []
        for index, (item_data, line) in enumerate(zip(items_data, lines)):
            items.append(BillItem(
                product_name=item_data.product_name,
                product_code=item_data.product_code,
                unit=item_data.unit,
                quantity=item_data.quantity,
                rate=quantize(item_data.rate),
                discount_percent=item_data.discount_percent,
                discount_amount=line.discount_amount,
                tax_percent=item_data.tax_percent,
                tax_amount=line.tax_amount,
                subtotal=line.subtotal,
                total=line.total,
                sort_order=index,
            ))
        return items

    # ----- actualización -----

    def update_bill(self, business_id: UUID, actor_id: UUID, bill_id: UUID, bill_update: BillUpdate) -> Bill:
        """Actualizar una factura en borrador o pendiente que aún no fue aprobada"""
        self.permissions.require(actor_id, business_id, Resource.BILLS, Action.UPDATE)
        patch = bill_update.model_dump(exclude_unset=True)
        if not patch:
            raise ValidationError("No hay campos para actualizar")
        if "bill_date" in patch and patch["bill_date"] is None:
            raise ValidationError("La fecha de la factura es obligatoria", field="bill_date")

        businesses = BusinessService(self.db, self.permissions)
        approval_requested = []

        def unit() -> Bill:
            approval_requested.clear()
            bill = self.lock_bill(business_id, bill_id)

            if bill.status not in EDITABLE_STATUSES or bill.approval_status == ApprovalStatus.APPROVED:
                raise InvalidStateError(
                    f"La factura {bill.bill_number} no se puede editar en estado "
                    f"{bill.status.value}/{bill.approval_status.value}"
                )

            touches_money = any(name in patch for name in MONETARY_FIELDS)
            if touches_money and self.has_allocations(bill.id):
                raise InvalidStateError("La factura tiene pagos asignados; los montos están congelados")

            if "customer_id" in patch and patch["customer_id"]:
                CustomerService(self.db).require_customer(patch["customer_id"], business_id)

            new_bill_date = patch.get("bill_date") or bill.bill_date
            new_due_date = patch["due_date"] if "due_date" in patch else bill.due_date
            if new_due_date and new_due_date < new_bill_date:
                raise ValidationError(
                    "La fecha de vencimiento no puede ser anterior a la fecha de la factura",
                    field="due_date"
                )

            changes: Dict[str, Dict[str, Any]] = {}
            for name, value in patch.items():
                if name in MONETARY_FIELDS:
                    continue
                old = getattr(bill, name)
                if old != value:
                    changes[name] = {"old": to_jsonable(old), "new": to_jsonable(value)}
                    setattr(bill, name, value)

            if touches_money:
                changes.update(self._apply_totals(bill, bill_update, patch))

            # Una factura ya emitida sin aprobación vuelve a evaluarse con el nuevo total
            if (
                touches_money
                and bill.status == BillStatus.PENDING
                and bill.approval_status == ApprovalStatus.NOT_REQUIRED
            ):
                business = businesses.get_business(business_id)
                if businesses.requires_approval(business, bill.total_amount):
                    bill.requires_approval = True
                    bill.approval_status = ApprovalStatus.PENDING
                    self.history.record_approval(
                        bill, "SUBMITTED", actor_id,
                        bill.status, bill.status,
                        ApprovalStatus.NOT_REQUIRED, ApprovalStatus.PENDING,
                        notes="El nuevo total requiere aprobación"
                    )
                    changes["approval_status"] = {
                        "old": ApprovalStatus.NOT_REQUIRED.value,
                        "new": ApprovalStatus.PENDING.value,
                    }
                    approval_requested.append(business.owner_id)

            self.history.record_bill_change(
                bill, "UPDATED", actor_id,
                old_status=bill.status, new_status=bill.status,
                changes=changes
            )
            self.db.commit()
            self.db.refresh(bill)
            return bill

        try:
            bill = run_with_retry(self.db, unit, "update_bill")
        except HTTPException:
            self.db.rollback()
            raise
        except Exception:
            self.db.rollback()
            logger.error(f"Unexpected error updating bill {bill_id}", exc_info=True)
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Error actualizando factura"
            )

        logger.info(f"Bill {bill.bill_number} updated by {actor_id}")
        if approval_requested:
            logger.info(f"Bill {bill.bill_number} now requires approval after total changed to {bill.total_amount}")
            self.notifier.notify(
                type="BILL_APPROVAL_REQUIRED",
                recipient_id=approval_requested[0],
                business_id=business_id,
                title=f"Factura {bill.bill_number} pendiente de aprobación",
                message=f"La factura {bill.bill_number} cambió a {bill.total_amount} y requiere aprobación",
                entity_type="BILL",
                entity_id=bill.id,
            )
        return bill

    def _apply_totals(self, bill: Bill, bill_update: BillUpdate, patch: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
        """Recalcula totales con el parche aplicado sobre los valores actuales"""
        if bill_update.items is not None:
            items_data = bill_update.items
        else:
            items_data = bill.items

        line_discounts = sum((item.discount_amount for item in bill.items), ZERO)
        if "discount_amount" in patch or "discount_percent" in patch:
            discount_amount = patch.get("discount_amount")
            discount_percent = patch.get("discount_percent")
        elif bill.discount_percent is not None:
            discount_amount, discount_percent = None, bill.discount_percent
        else:
            discount_amount, discount_percent = bill.discount_amount - line_discounts, None

        totals = compute_bill_totals(
            items_data,
            discount_amount=discount_amount,
            discount_percent=discount_percent,
            shipping_cost=patch.get("shipping_cost", bill.shipping_cost),
            adjustment_amount=patch.get("adjustment_amount", bill.adjustment_amount),
            round_off_amount=patch.get("round_off_amount", bill.round_off_amount),
        )

        if bill_update.items is not None:
            bill.items.clear()
            self.db.flush()
            bill.items.extend(self._build_items(bill_update.items, totals.lines))

        changes = {}
        new_values = {
            "subtotal": totals.subtotal,
            "discount_amount": totals.discount_amount,
            "tax_amount": totals.tax_amount,
            "shipping_cost": totals.shipping_cost,
            "adjustment_amount": totals.adjustment_amount,
            "round_off_amount": totals.round_off_amount,
            "total_amount": totals.total_amount,
            "balance_amount": totals.total_amount - quantize(bill.paid_amount),
        }
        for name, value in new_values.items():
            old = quantize(getattr(bill, name))
            if old != value:
                changes[name] = {"old": str(old), "new": str(value)}
            setattr(bill, name, value)
        if "discount_percent" in patch or "discount_amount" in patch:
            bill.discount_percent = patch.get("discount_percent")
        if bill_update.items is not None:
            changes["items"] = {"old": None, "new": len(bill_update.items)}
        return changes

    # ----- anulación y borrado -----

    def void_bill(self, business_id: UUID, actor_id: UUID, bill_id: UUID, reason: str) -> Bill:
        """
        Anular una factura

        Las asignaciones de pago existentes no se revierten. Si la factura
        esperaba aprobación, la solicitud queda cancelada.
        """
        self.permissions.require(actor_id, business_id, Resource.BILLS, Action.VOID)
        if not reason or not reason.strip():
            raise ValidationError("El motivo de anulación es obligatorio", field="reason")

        def unit() -> Bill:
            bill = self.lock_bill(business_id, bill_id)
            if bill.status == BillStatus.VOID:
                raise InvalidStateError(f"La factura {bill.bill_number} ya está anulada")
            if bill.status == BillStatus.PAID:
                raise InvalidStateError(f"La factura {bill.bill_number} está pagada y no se puede anular")
            assert_transition(bill, BillStatus.VOID)

            old_status = bill.status
            old_approval = bill.approval_status
            bill.status = BillStatus.VOID
            bill.voided_by = actor_id
            bill.voided_at = utcnow()
            bill.void_reason = reason.strip()

            if old_approval == ApprovalStatus.PENDING:
                bill.approval_status = ApprovalStatus.CANCELLED
                self.history.record_approval(
                    bill, "CANCELLED", actor_id,
                    old_status, BillStatus.VOID,
                    old_approval, ApprovalStatus.CANCELLED,
                    notes=reason
                )

            self.history.record_bill_change(
                bill, "VOIDED", actor_id,
                old_status=old_status, new_status=BillStatus.VOID,
                notes=reason, include_snapshot=True
            )
            self.db.commit()
            self.db.refresh(bill)
            return bill

        try:
            bill = run_with_retry(self.db, unit, "void_bill")
            logger.info(f"Bill {bill.bill_number} voided by {actor_id}")
            return bill
        except HTTPException:
            self.db.rollback()
            raise
        except Exception:
            self.db.rollback()
            logger.error(f"Unexpected error voiding bill {bill_id}", exc_info=True)
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Error anulando factura"
            )

    def delete_bill(self, business_id: UUID, actor_id: UUID, bill_id: UUID) -> Bill:
        """Borrado lógico; no se permite una vez que la factura recibió pagos"""
        self.permissions.require(actor_id, business_id, Resource.BILLS, Action.DELETE)

        def unit() -> Bill:
            bill = self.lock_bill(business_id, bill_id)
            if bill.paid_amount > 0 or self.has_allocations(bill.id):
                raise InvalidStateError(f"La factura {bill.bill_number} tiene pagos asignados")

            bill.soft_delete()
            self.history.record_bill_change(
                bill, "DELETED", actor_id,
                old_status=bill.status, new_status=bill.status
            )
            self.db.commit()
            return bill

        try:
            bill = run_with_retry(self.db, unit, "delete_bill")
            logger.info(f"Bill {bill.bill_number} deleted by {actor_id}")
            return bill
        except HTTPException:
            self.db.rollback()
            raise
        except Exception:
            self.db.rollback()
            logger.error(f"Unexpected error deleting bill {bill_id}", exc_info=True)
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Error eliminando factura"
            )

    # ----- vencimiento -----

    def mark_overdue_bills(self, today: Optional[date] = None, business_id: Optional[UUID] = None) -> int:
        """
        Marca como OVERDUE las facturas pendientes o parciales con saldo y
        fecha de vencimiento pasada. Cada factura se confirma por separado.
        """
        today = today or date.today()
        query = self.db.query(Bill.id, Bill.business_id).filter(
            Bill.status.in_([BillStatus.PENDING, BillStatus.PARTIAL]),
            Bill.balance_amount > 0,
            Bill.due_date.isnot(None),
            Bill.due_date < today,
            Bill.deleted_at.is_(None),
            or_(Bill.requires_approval == False, Bill.approval_status == ApprovalStatus.APPROVED)
        )
        if business_id:
            query = query.filter(Bill.business_id == business_id)
        candidates = query.all()

        marked = 0
        for candidate_id, candidate_business in candidates:
            def unit(bill_id=candidate_id, owner_business=candidate_business) -> bool:
                bill = self.lock_bill(owner_business, bill_id)
                awaiting_approval = bill.requires_approval and bill.approval_status != ApprovalStatus.APPROVED
                if (
                    bill.status not in (BillStatus.PENDING, BillStatus.PARTIAL)
                    or bill.balance_amount <= 0
                    or awaiting_approval
                ):
                    self.db.rollback()
                    return False
                old_status = bill.status
                bill.status = BillStatus.OVERDUE
                self.history.record_bill_change(
                    bill, "OVERDUE", None,
                    old_status=old_status, new_status=BillStatus.OVERDUE,
                    notes=f"Vencida el {bill.due_date.isoformat()}"
                )
                self.db.commit()
                return True

            try:
                if run_with_retry(self.db, unit, "mark_overdue"):
                    marked += 1
            except HTTPException as exc:
                self.db.rollback()
                logger.warning(f"Bill {candidate_id} not marked overdue: {exc.detail}")

        if marked:
            logger.info(f"{marked} bills marked overdue as of {today.isoformat()}")
        return marked
