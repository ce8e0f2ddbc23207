from fastapi import FastAPI, APIRouter, HTTPException, Header, Query, Request, status, Depends
from dotenv import load_dotenv
from starlette.middleware.cors import CORSMiddleware
from motor.motor_asyncio import AsyncIOMotorClient
from pydantic import BaseModel
from bson import ObjectId, Decimal128
import uvicorn
import os
import logging
from pathlib import Path
from typing import Optional, Dict, Any
from datetime import date, datetime, timezone
from decimal import Decimal

from procurement_core.budget_ledger import BudgetLedger
from procurement_core.document_store import DocumentStore
from procurement_core.errors import (
    NotFoundError,
    PersistenceError,
    PreconditionError,
    ProcurementError,
    ValidationError,
)
from procurement_core.models import BudgetInput, OrderDraft, TenantContext
from procurement_core.mongo_store import MongoDocumentStore
from procurement_core.notifications import NotificationSender, SupplierNotifier
from procurement_core.order_lifecycle import OrderLifecycleEngine, TransitionResult
from notification_service import HttpMailRelaySender, LoggingNotificationSender


def serialize_doc(doc: Any) -> Any:
    """Serialize a record for JSON response (handles Decimal, Decimal128, ObjectId, dates)"""
    if doc is None:
        return None
    if isinstance(doc, dict):
        return {key: serialize_doc(value) for key, value in doc.items()}
    if isinstance(doc, (list, tuple)):
        return [serialize_doc(item) for item in doc]
    if isinstance(doc, ObjectId):
        return str(doc)
    if isinstance(doc, Decimal128):
        return float(doc.to_decimal())
    if isinstance(doc, Decimal):
        return float(doc)
    if isinstance(doc, (datetime, date)):
        return doc.isoformat()
    return doc


ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


# ============================================
# CONFIGURATION
# ============================================

def build_notification_sender() -> NotificationSender:
    dev_mode = os.environ.get('EMAIL_DEV_MODE', 'false').lower() == 'true'
    relay_url = os.environ.get('MAIL_RELAY_URL')
    if dev_mode or not relay_url:
        logger.info("Email dev mode: supplier notifications are logged, not sent")
        return LoggingNotificationSender()
    return HttpMailRelaySender(relay_url, api_key=os.environ.get('MAIL_RELAY_API_KEY'))


def notification_timeout() -> Optional[float]:
    value = os.environ.get('NOTIFICATION_TIMEOUT_SECONDS')
    return float(value) if value else None


# ============================================
# REQUEST CONTEXT
# ============================================

async def get_tenant_context(
    x_tenant_id: str = Header(...),
    x_user_id: str = Header(...),
    x_business_name: Optional[str] = Header(None)
) -> TenantContext:
    """Tenant and user are asserted by the identity layer in front of this service."""
    return TenantContext(tenant_id=x_tenant_id, user_id=x_user_id, business_name=x_business_name)


def get_engine(request: Request) -> OrderLifecycleEngine:
    return request.app.state.order_engine


def get_ledger(request: Request) -> BudgetLedger:
    return request.app.state.budget_ledger


def http_error(e: ProcurementError) -> HTTPException:
    """Translate a core error into the matching HTTP error."""
    if isinstance(e, ValidationError):
        return HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"message": str(e), "errors": e.errors}
        )
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    if isinstance(e, PreconditionError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    if isinstance(e, PersistenceError):
        logger.error(f"Persistence failure: {e}")
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))


class ExpenseCreate(BaseModel):
    amount: Decimal
    description: str = ""


# ============================================
# PURCHASE ORDER ENDPOINTS
# ============================================

api_router = APIRouter(prefix="/api")


def transition_response(result: TransitionResult) -> Dict[str, Any]:
    return serialize_doc(result.to_dict())


@api_router.get("/purchase-orders")
async def list_purchase_orders(
    status_filter: Optional[str] = Query(None, alias="status"),
    ctx: TenantContext = Depends(get_tenant_context),
    engine: OrderLifecycleEngine = Depends(get_engine)
):
    try:
        orders = await engine.list_orders(ctx, status=status_filter)
    except ProcurementError as e:
        raise http_error(e)
    return [serialize_doc(order.model_dump()) for order in orders]


@api_router.get("/purchase-orders/{order_id}")
async def get_purchase_order(
    order_id: str,
    ctx: TenantContext = Depends(get_tenant_context),
    engine: OrderLifecycleEngine = Depends(get_engine)
):
    try:
        order = await engine.get_order(ctx, order_id)
    except ProcurementError as e:
        raise http_error(e)
    result = serialize_doc(order.model_dump())
    result["available_events"] = engine.available_events(order)
    return result


@api_router.post("/purchase-orders", status_code=status.HTTP_201_CREATED)
async def create_purchase_order(
    draft: OrderDraft,
    submit: bool = False,
    ctx: TenantContext = Depends(get_tenant_context),
    engine: OrderLifecycleEngine = Depends(get_engine)
):
    """
    Create a purchase order.

    submit=false saves a draft, submit=true creates it directly in
    pending_approval. Both run full validation.
    """
    try:
        if submit:
            result = await engine.submit_for_approval(ctx, draft=draft)
        else:
            result = await engine.save_draft(ctx, draft)
    except ProcurementError as e:
        raise http_error(e)
    return transition_response(result)


@api_router.put("/purchase-orders/{order_id}")
async def update_purchase_order(
    order_id: str,
    draft: OrderDraft,
    ctx: TenantContext = Depends(get_tenant_context),
    engine: OrderLifecycleEngine = Depends(get_engine)
):
    """Replace the header of a draft order. 409 once the order left draft."""
    try:
        result = await engine.save_draft(ctx, draft, order_id=order_id)
    except ProcurementError as e:
        raise http_error(e)
    return transition_response(result)


@api_router.post("/purchase-orders/{order_id}/submit")
async def submit_purchase_order(
    order_id: str,
    draft: Optional[OrderDraft] = None,
    ctx: TenantContext = Depends(get_tenant_context),
    engine: OrderLifecycleEngine = Depends(get_engine)
):
    try:
        result = await engine.submit_for_approval(ctx, order_id=order_id, draft=draft)
    except ProcurementError as e:
        raise http_error(e)
    return transition_response(result)


@api_router.post("/purchase-orders/{order_id}/approve")
async def approve_purchase_order(
    order_id: str,
    ctx: TenantContext = Depends(get_tenant_context),
    engine: OrderLifecycleEngine = Depends(get_engine)
):
    try:
        result = await engine.approve(ctx, order_id)
    except ProcurementError as e:
        raise http_error(e)
    return transition_response(result)


@api_router.post("/purchase-orders/{order_id}/send")
async def send_purchase_order(
    order_id: str,
    ctx: TenantContext = Depends(get_tenant_context),
    engine: OrderLifecycleEngine = Depends(get_engine)
):
    try:
        result = await engine.send_to_supplier(ctx, order_id)
    except ProcurementError as e:
        raise http_error(e)
    return transition_response(result)


@api_router.post("/purchase-orders/{order_id}/receive")
async def receive_purchase_order(
    order_id: str,
    ctx: TenantContext = Depends(get_tenant_context),
    engine: OrderLifecycleEngine = Depends(get_engine)
):
    try:
        result = await engine.mark_received(ctx, order_id)
    except ProcurementError as e:
        raise http_error(e)
    return transition_response(result)


@api_router.post("/purchase-orders/{order_id}/cancel")
async def cancel_purchase_order(
    order_id: str,
    ctx: TenantContext = Depends(get_tenant_context),
    engine: OrderLifecycleEngine = Depends(get_engine)
):
    try:
        result = await engine.cancel(ctx, order_id)
    except ProcurementError as e:
        raise http_error(e)
    return transition_response(result)


@api_router.delete("/purchase-orders/{order_id}")
async def delete_purchase_order(
    order_id: str,
    ctx: TenantContext = Depends(get_tenant_context),
    engine: OrderLifecycleEngine = Depends(get_engine)
):
    try:
        order = await engine.delete_order(ctx, order_id)
    except ProcurementError as e:
        raise http_error(e)
    return {"status": "deleted", "id": order.id, "order_number": order.order_number}


# ============================================
# BUDGET ENDPOINTS
# ============================================

def budget_response(budget) -> Dict[str, Any]:
    result = serialize_doc(budget.model_dump())
    result["remaining"] = float(budget.remaining)
    result["usage_level"] = budget.usage_level
    return result


@api_router.get("/budgets")
async def list_budgets(
    year: Optional[int] = None,
    ctx: TenantContext = Depends(get_tenant_context),
    ledger: BudgetLedger = Depends(get_ledger)
):
    try:
        budgets = await ledger.list_budgets(ctx, year=year)
    except ProcurementError as e:
        raise http_error(e)
    return [budget_response(b) for b in budgets]


@api_router.post("/budgets", status_code=status.HTTP_201_CREATED)
async def create_budget(
    data: BudgetInput,
    ctx: TenantContext = Depends(get_tenant_context),
    ledger: BudgetLedger = Depends(get_ledger)
):
    """Record a budget entry and reconcile it into its annual budget."""
    try:
        result = await ledger.record_budget(ctx, data)
    except ProcurementError as e:
        raise http_error(e)
    return {
        "budget": budget_response(result.budget),
        "annual_budget": serialize_doc(result.annual_budget.model_dump()),
    }


@api_router.get("/budgets/{budget_id}")
async def get_budget(
    budget_id: str,
    ctx: TenantContext = Depends(get_tenant_context),
    ledger: BudgetLedger = Depends(get_ledger)
):
    try:
        budget = await ledger.get_budget(ctx, budget_id)
    except ProcurementError as e:
        raise http_error(e)
    return budget_response(budget)


@api_router.post("/budgets/{budget_id}/expenses", status_code=status.HTTP_201_CREATED)
async def record_expense(
    budget_id: str,
    expense: ExpenseCreate,
    ctx: TenantContext = Depends(get_tenant_context),
    ledger: BudgetLedger = Depends(get_ledger)
):
    try:
        budget = await ledger.record_expense(ctx, budget_id, expense.amount, expense.description)
    except ProcurementError as e:
        raise http_error(e)
    return budget_response(budget)


@api_router.get("/budgets/{budget_id}/expenses")
async def list_expenses(
    budget_id: str,
    ctx: TenantContext = Depends(get_tenant_context),
    ledger: BudgetLedger = Depends(get_ledger)
):
    try:
        expenses = await ledger.list_expenses(ctx, budget_id)
    except ProcurementError as e:
        raise http_error(e)
    return [serialize_doc(e.model_dump()) for e in expenses]


@api_router.get("/annual-budgets/{year}")
async def get_annual_budget(
    year: int,
    ctx: TenantContext = Depends(get_tenant_context),
    ledger: BudgetLedger = Depends(get_ledger)
):
    try:
        annual = await ledger.get_annual_budget(ctx, year)
    except ProcurementError as e:
        raise http_error(e)
    if annual is None:
        raise HTTPException(status_code=404, detail=f"No annual budget for {year}")
    return serialize_doc(annual.model_dump())


@api_router.post("/annual-budgets/{year}/rebuild")
async def rebuild_annual_budget(
    year: int,
    ctx: TenantContext = Depends(get_tenant_context),
    ledger: BudgetLedger = Depends(get_ledger)
):
    try:
        annual = await ledger.rebuild_annual_budget(ctx, year)
    except ProcurementError as e:
        raise http_error(e)
    return serialize_doc(annual.model_dump())


@api_router.get("/annual-budgets/{year}/verify")
async def verify_annual_budget(
    year: int,
    ctx: TenantContext = Depends(get_tenant_context),
    ledger: BudgetLedger = Depends(get_ledger)
):
    try:
        report = await ledger.verify_annual_budget(ctx, year)
    except ProcurementError as e:
        raise http_error(e)
    return serialize_doc(report)


@api_router.post("/maintenance/reconcile-associations")
async def reconcile_associations(
    ctx: TenantContext = Depends(get_tenant_context),
    ledger: BudgetLedger = Depends(get_ledger)
):
    try:
        repaired = await ledger.reconcile_tenant_associations(ctx)
    except ProcurementError as e:
        raise http_error(e)
    return {"repaired": repaired, "count": len(repaired)}


@api_router.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": "1.0.0",
    }


# ============================================
# APPLICATION
# ============================================

def create_app(
    store: Optional[DocumentStore] = None,
    notification_sender: Optional[NotificationSender] = None
) -> FastAPI:
    """
    Build the API. Without an explicit store the MongoDB store configured
    by MONGO_URL / DB_NAME is used.
    """
    app = FastAPI(
        title="Procurement Core",
        version="1.0.0",
        description="Purchase order lifecycle and budget reconciliation"
    )

    client = None
    if store is None:
        client = AsyncIOMotorClient(os.environ['MONGO_URL'])
        store = MongoDocumentStore(client[os.environ['DB_NAME']])

    notifier = SupplierNotifier(
        notification_sender or build_notification_sender(),
        timeout_seconds=notification_timeout()
    )
    app.state.store = store
    app.state.order_engine = OrderLifecycleEngine(store, notifier)
    app.state.budget_ledger = BudgetLedger(store)

    app.include_router(api_router)

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_credentials=True,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    if isinstance(store, MongoDocumentStore):
        @app.on_event("startup")
        async def create_indexes():
            await store.create_indexes()

    if client is not None:
        @app.on_event("shutdown")
        async def shutdown_db_client():
            client.close()

    return app


app = create_app()


def main():
    """Serve the API with uvicorn (console script `procurement-server`)."""
    uvicorn.run(
        app,
        host=os.environ.get('HOST', '0.0.0.0'),
        port=int(os.environ.get('PORT', '8001')),
        log_level=os.environ.get('LOG_LEVEL', 'info').lower()
    )


if __name__ == "__main__":
    main()
