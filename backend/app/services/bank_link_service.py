"""
Bank account linking through Plaid.

A Plaid public token from the mobile Link flow is exchanged for an access
token, and Plaid then mints a Stripe bank-account token that becomes the
participant's ACH payment source.
"""
from dataclasses import dataclass
from typing import Optional
import httpx
import logging
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from app.core.config import settings
from app.core.exceptions import PaymentProviderError
from app.models.payment import BankAccount

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LinkedAccount:
    """Result of a successful public token exchange."""
    item_id: str
    payment_source_token: str
    account_mask: Optional[str]
    institution_name: Optional[str]


class PlaidClient:
    """Plaid REST API client."""

    def __init__(self, client_id: str = None, secret: str = None, api_url: str = None,
                 timeout: float = None):
        self.client_id = client_id or settings.PLAID_CLIENT_ID
        self.secret = secret or settings.PLAID_SECRET
        self.api_url = (api_url or settings.PLAID_API_URL).rstrip("/")
        self.timeout = timeout or settings.PROVIDER_TIMEOUT_SECONDS

    def exchange_public_token(self, public_token: str) -> LinkedAccount:
        exchange = self._post("/item/public_token/exchange", {"public_token": public_token})
        access_token = exchange["access_token"]

        accounts = self._post("/accounts/get", {"access_token": access_token})
        if not accounts.get("accounts"):
            raise PaymentProviderError("No accounts returned for linked item", code="no_accounts")
        account = accounts["accounts"][0]
        institution = accounts.get("item", {}).get("institution_name") or account.get("institution_name")

        bank_token = self._post(
            "/processor/stripe/bank_account_token/create",
            {"access_token": access_token, "account_id": account["account_id"]},
        )
        logger.info(f"Linked Plaid item {exchange['item_id']} (account ****{account.get('mask')})")
        return LinkedAccount(
            item_id=exchange["item_id"],
            payment_source_token=bank_token["stripe_bank_account_token"],
            account_mask=account.get("mask"),
            institution_name=institution,
        )

    def _post(self, path: str, payload: dict) -> dict:
        body = {"client_id": self.client_id, "secret": self.secret, **payload}
        try:
            response = httpx.post(f"{self.api_url}{path}", json=body, timeout=self.timeout)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            error_text = e.response.text if hasattr(e.response, 'text') else str(e)
            logger.error(f"Plaid API error on {path}: {e.response.status_code} - {error_text}")
            raise PaymentProviderError(f"Plaid error: {e.response.status_code}", code="plaid_error")
        except httpx.HTTPError as e:
            logger.error(f"Plaid network error on {path}: {e}")
            raise PaymentProviderError(f"Plaid network error: {str(e)}", code="network_error")


def link_bank_account(db: Session, user_id: int, public_token: str, provider) -> BankAccount:
    """
    Exchange the public token and store the resulting payment source.

    Linking the same Plaid item again refreshes the existing account instead
    of adding a second one.
    """
    linked = provider.exchange_public_token(public_token)
    account = db.query(BankAccount).filter(
        BankAccount.user_id == user_id,
        BankAccount.plaid_item_id == linked.item_id
    ).first()
    if account:
        logger.info(f"Plaid item {linked.item_id} already linked for user {user_id}, refreshing")
    else:
        account = BankAccount(user_id=user_id, plaid_item_id=linked.item_id)
        db.add(account)
    account.payment_source_token = linked.payment_source_token
    account.account_mask = linked.account_mask
    account.institution_name = linked.institution_name
    try:
        db.commit()
    except IntegrityError:
        # Same item linked concurrently
        db.rollback()
        account = db.query(BankAccount).filter(
            BankAccount.user_id == user_id,
            BankAccount.plaid_item_id == linked.item_id
        ).first()
        return account
    db.refresh(account)
    return account


def get_payment_source(db: Session, user_id: int) -> Optional[BankAccount]:
    """The user's most recently linked bank account."""
    return db.query(BankAccount).filter(
        BankAccount.user_id == user_id
    ).order_by(BankAccount.id.desc()).first()
