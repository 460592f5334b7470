import logging
from datetime import date
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Response
from sqlalchemy.orm import Session

from auth import issue_session_token, read_session_token
from config import get_settings
from database import SessionLocal, session_scope
from grouping import (
    ConflictingModeError,
    InstallmentRangeError,
    MutationScope,
    resolve_group_key,
)
from models import (
    Budget,
    Category,
    CategoryType,
    CreditCard,
    CreditCardInvoice,
    Subscription,
    Transaction,
    TransactionType,
)
from money import format_currency
from periods import custom_period, local_today
from schemas import (
    BudgetIn,
    CategoryIn,
    CreditCardIn,
    InvoicePaymentIn,
    SessionIn,
    SignupIn,
    SubscriptionIn,
    TransactionIn,
    TransactionUpdate,
)
from services import (
    AuthenticationError,
    BudgetService,
    CategoryService,
    CreditCardService,
    DuplicateUserError,
    MetricsService,
    NotFoundError,
    SubscriptionService,
    TransactionFilters,
    TransactionService,
    UserService,
)

settings = get_settings()
logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title="Finance Tracker")


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def current_user_id(authorization: Optional[str] = Header(default=None)) -> int:
    if not authorization:
        settings = get_settings()
        if not settings.allow_anonymous:
            raise HTTPException(status_code=401, detail="Authentication required")
        return settings.default_user_id
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise HTTPException(status_code=401, detail="Invalid authorization header")
    try:
        return read_session_token(token.strip())
    except ValueError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc


def http_error(exc: ValueError) -> HTTPException:
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, AuthenticationError):
        return HTTPException(status_code=401, detail=str(exc))
    if isinstance(exc, (ConflictingModeError, DuplicateUserError)):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, InstallmentRangeError):
        return HTTPException(status_code=422, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


@app.on_event("startup")
def startup_event():
    with session_scope() as session:
        UserService(session).ensure_default_user()


def category_out(category: Category) -> dict[str, object]:
    return {
        "id": category.id,
        "name": category.name,
        "icon": category.icon,
        "color": category.color,
        "type": category.type.value,
    }


def card_out(card: CreditCard) -> dict[str, object]:
    return {
        "id": card.id,
        "name": card.name,
        "brand": card.brand,
        "bank": card.bank,
        "limit_cents": card.limit_cents,
        "current_used_cents": card.current_used_cents,
        "available_limit_cents": card.available_limit_cents,
        "color": card.color,
        "closing_day": card.closing_day,
        "due_day": card.due_day,
        "is_blocked": card.is_blocked,
    }


def invoice_out(invoice: CreditCardInvoice) -> dict[str, object]:
    return {
        "id": invoice.id,
        "credit_card_id": invoice.credit_card_id,
        "due_date": invoice.due_date.isoformat(),
        "total_cents": invoice.total_cents,
        "paid_cents": invoice.paid_cents,
        "status": invoice.status.value,
    }


def subscription_out(sub: Subscription) -> dict[str, object]:
    return {
        "id": sub.id,
        "name": sub.name,
        "service": sub.service,
        "amount_cents": sub.amount_cents,
        "billing_day": sub.billing_day,
        "payment_method": sub.payment_method.value,
        "credit_card_id": sub.credit_card_id,
        "category_id": sub.category_id,
        "is_active": sub.is_active,
    }


def transaction_out(txn: Transaction, service: TransactionService) -> dict[str, object]:
    return {
        "id": txn.id,
        "description": txn.description,
        "amount_cents": txn.amount_cents,
        "amount_display": format_currency(txn.amount_cents),
        "date": txn.date.isoformat(),
        "kind": txn.kind.value,
        "category_id": txn.category_id,
        "category": txn.category.name if txn.category else None,
        "payment_method": txn.payment_method.value if txn.payment_method else None,
        "credit_card_id": txn.credit_card_id,
        "installments": txn.installments,
        "installment_number": txn.installment_number,
        "parent_transaction_id": txn.parent_transaction_id,
        "is_recurring": txn.is_recurring,
        "group_kind": service.group_kind(txn).value,
        "group_key": resolve_group_key(txn),
    }


def budget_out(budget: Budget) -> dict[str, object]:
    return {
        "id": budget.id,
        "category_id": budget.category_id,
        "amount_cents": budget.amount_cents,
        "month": budget.month,
        "year": budget.year,
    }


def resolve_month(year: Optional[int], month: Optional[int]) -> tuple[int, int]:
    today = local_today()
    return year or today.year, month or today.month


@app.post("/api/users", status_code=201)
def register_user(payload: SignupIn, db: Session = Depends(get_db)):
    try:
        user = UserService(db).register(payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"id": user.id, "email": user.email}


@app.post("/api/session")
def create_session(payload: SessionIn, db: Session = Depends(get_db)):
    try:
        user = UserService(db).authenticate(payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    logger.info(f"session_issued: user={user.id}")
    return {"token": issue_session_token(user.id), "user_id": user.id}


@app.get("/api/categories")
def list_categories(
    type: Optional[CategoryType] = None,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    categories = CategoryService(db, user_id).list_all(type)
    return [category_out(c) for c in categories]


@app.post("/api/categories", status_code=201)
def create_category(
    payload: CategoryIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    try:
        category = CategoryService(db, user_id).create(payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return category_out(category)


@app.put("/api/categories/{category_id}")
def update_category(
    category_id: int,
    payload: CategoryIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    try:
        category = CategoryService(db, user_id).update(category_id, payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return category_out(category)


@app.delete("/api/categories/{category_id}", status_code=204)
def delete_category(
    category_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    try:
        CategoryService(db, user_id).delete(category_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return Response(status_code=204)


@app.get("/api/credit-cards")
def list_credit_cards(
    db: Session = Depends(get_db), user_id: int = Depends(current_user_id)
):
    return [card_out(c) for c in CreditCardService(db, user_id).list_all()]


@app.post("/api/credit-cards", status_code=201)
def create_credit_card(
    payload: CreditCardIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    card = CreditCardService(db, user_id).create(payload)
    return card_out(card)


@app.get("/api/credit-cards/{card_id}")
def get_credit_card(
    card_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    try:
        card = CreditCardService(db, user_id).get(card_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return card_out(card)


@app.put("/api/credit-cards/{card_id}")
def update_credit_card(
    card_id: int,
    payload: CreditCardIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    try:
        card = CreditCardService(db, user_id).update(card_id, payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return card_out(card)


@app.delete("/api/credit-cards/{card_id}", status_code=204)
def delete_credit_card(
    card_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    try:
        CreditCardService(db, user_id).delete(card_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return Response(status_code=204)


@app.get("/api/credit-cards/{card_id}/statement")
def credit_card_statement(
    card_id: int,
    start: date,
    end: date,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    try:
        entries = CreditCardService(db, user_id).statement(card_id, start, end)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {
        "card_id": card_id,
        "start": start.isoformat(),
        "end": end.isoformat(),
        "total_cents": sum(int(e["amount_cents"]) for e in entries),
        "items": [{**e, "date": e["date"].isoformat()} for e in entries],
    }


@app.get("/api/credit-card-invoices/{card_id}/{due_date}")
def get_invoice(
    card_id: int,
    due_date: date,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    try:
        invoice = CreditCardService(db, user_id).get_or_create_invoice(card_id, due_date)
    except ValueError as exc:
        raise http_error(exc) from exc
    return invoice_out(invoice)


@app.put("/api/credit-card-invoices/{invoice_id}/pay")
def pay_invoice(
    invoice_id: int,
    payload: InvoicePaymentIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    try:
        invoice = CreditCardService(db, user_id).pay_invoice(invoice_id, payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return invoice_out(invoice)


@app.get("/api/subscriptions")
def list_subscriptions(
    active_only: bool = False,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    subs = SubscriptionService(db, user_id).list_all(active_only=active_only)
    return [subscription_out(s) for s in subs]


@app.post("/api/subscriptions", status_code=201)
def create_subscription(
    payload: SubscriptionIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    try:
        sub = SubscriptionService(db, user_id).create(payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return subscription_out(sub)


@app.put("/api/subscriptions/{subscription_id}")
def update_subscription(
    subscription_id: int,
    payload: SubscriptionIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    try:
        sub = SubscriptionService(db, user_id).update(subscription_id, payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return subscription_out(sub)


@app.post("/api/subscriptions/{subscription_id}/toggle")
def toggle_subscription(
    subscription_id: int,
    active: bool = Query(...),
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    try:
        sub = SubscriptionService(db, user_id).toggle(subscription_id, active)
    except ValueError as exc:
        raise http_error(exc) from exc
    return subscription_out(sub)


@app.delete("/api/subscriptions/{subscription_id}", status_code=204)
def delete_subscription(
    subscription_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    try:
        SubscriptionService(db, user_id).delete(subscription_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return Response(status_code=204)


@app.get("/api/transactions")
def list_transactions(
    kind: Optional[TransactionType] = None,
    category_id: Optional[int] = None,
    q: Optional[str] = None,
    start: Optional[date] = None,
    end: Optional[date] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    period = None
    if start and end:
        try:
            period = custom_period(start, end)
        except ValueError as exc:
            raise http_error(exc) from exc
    filters = TransactionFilters(kind=kind, category_id=category_id, query=q)
    service = TransactionService(db, user_id)
    offset = (page - 1) * limit
    items = service.history(filters, period, limit=limit + 1, offset=offset)
    has_more = len(items) > limit
    items = items[:limit]
    return {
        "items": [transaction_out(txn, service) for txn in items],
        "page": page,
        "limit": limit,
        "has_more": has_more,
    }


@app.post("/api/transactions", status_code=201)
def create_transaction(
    payload: TransactionIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    service = TransactionService(db, user_id)
    try:
        created = service.create(payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return [transaction_out(txn, service) for txn in created]


@app.get("/api/transactions/{transaction_id}")
def get_transaction(
    transaction_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    service = TransactionService(db, user_id)
    try:
        txn = service.get(transaction_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return transaction_out(txn, service)


@app.put("/api/transactions/{transaction_id}")
def update_transaction(
    transaction_id: int,
    payload: TransactionUpdate,
    scope: MutationScope = MutationScope.single,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    service = TransactionService(db, user_id)
    try:
        rows = service.update(transaction_id, payload, scope)
    except ValueError as exc:
        raise http_error(exc) from exc
    return [transaction_out(txn, service) for txn in rows]


@app.delete("/api/transactions/{transaction_id}")
def delete_transaction(
    transaction_id: int,
    scope: MutationScope = MutationScope.single,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    try:
        deleted = TransactionService(db, user_id).delete(transaction_id, scope)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"deleted": deleted}


@app.post("/api/transactions/{transaction_id}/occurrences", status_code=201)
def post_occurrence(
    transaction_id: int,
    year: int = Query(..., ge=1970, le=3000),
    month: int = Query(..., ge=1, le=12),
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    service = TransactionService(db, user_id)
    try:
        txn = service.post_recurring_occurrence(transaction_id, year, month)
    except ValueError as exc:
        raise http_error(exc) from exc
    return transaction_out(txn, service)


@app.get("/api/financial-summary")
def financial_summary(
    year: Optional[int] = Query(None, ge=1970, le=3000),
    month: Optional[int] = Query(None, ge=1, le=12),
    include_projections: bool = False,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    year, month = resolve_month(year, month)
    summary = MetricsService(db, user_id).monthly_summary(
        year, month, include_projections=include_projections
    )
    for item in summary.get("projected_recurring", []):
        item["date"] = item["date"].isoformat()
    return summary


@app.get("/api/financial-series")
def financial_series(
    year: Optional[int] = Query(None, ge=1970, le=3000),
    month: Optional[int] = Query(None, ge=1, le=12),
    months: int = 6,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    year, month = resolve_month(year, month)
    try:
        return MetricsService(db, user_id).monthly_series(year, month, months)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.get("/api/budgets")
def list_budgets(
    year: Optional[int] = Query(None, ge=1970, le=3000),
    month: Optional[int] = Query(None, ge=1, le=12),
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    year, month = resolve_month(year, month)
    return [budget_out(b) for b in BudgetService(db, user_id).list_for_month(year, month)]


@app.post("/api/budgets", status_code=201)
def upsert_budget(
    payload: BudgetIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    try:
        budget = BudgetService(db, user_id).upsert(payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return budget_out(budget)


@app.get("/api/budgets/progress")
def budget_progress(
    year: Optional[int] = Query(None, ge=1970, le=3000),
    month: Optional[int] = Query(None, ge=1, le=12),
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    year, month = resolve_month(year, month)
    return BudgetService(db, user_id).progress_for_month(year, month)


@app.delete("/api/budgets/{budget_id}", status_code=204)
def delete_budget(
    budget_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    try:
        BudgetService(db, user_id).delete(budget_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return Response(status_code=204)
