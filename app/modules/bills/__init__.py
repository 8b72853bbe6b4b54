"""
Módulo de Facturas (Bills)

Ciclo de vida de las facturas emitidas por un negocio a sus clientes.

ENTIDADES PRINCIPALES:
- Bills: encabezado con totales, saldo, estado y estado de aprobación
- BillItems: líneas con cantidad, tarifa, descuento e impuesto

ESTADOS:
- DRAFT → PENDING (emisión, ver approvals)
- PENDING → PARTIAL → PAID según los pagos asignados
- PENDING/PARTIAL → OVERDUE al vencer (tarea periódica)
- Cualquier estado salvo PAID → VOID (anulación con motivo)

REGLAS DE NEGOCIO:
- total_amount = paid_amount + balance_amount en todo momento
- Los montos solo se editan en DRAFT/PENDING y sin pagos asignados
- Cada mutación deja un registro en bill_history en la misma transacción
- Numeración {PREFIJO}-{AÑO}-{NÚMERO} consecutiva por negocio

CONCURRENCIA:
- Toda mutación bloquea la fila de la factura (SELECT ... FOR UPDATE)
- version_id detecta escrituras sobre datos obsoletos
- La contención se reintenta con backoff acotado y termina en ConflictError
"""
