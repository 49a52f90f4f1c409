# drawdown_trading/strike_client.py
"""
Strike API Client Wrapper

Thin, typed wrapper over the exchange REST API:
- Balances
- Currency-exchange quotes (create / execute / status)
- Invoices (best-effort trade receipts)

Every call carries a bearer token and an explicit timeout. HTTP and transport
failures raise StrikeAPIError; retries are left to the caller's whole-operation
retry wrapper.
"""

import logging
from typing import Any, Dict, Optional

import requests

from .config import TradingConfig
from .errors import StrikeAPIError
from .utils import utc_now

logger = logging.getLogger(__name__)

# Status polls use a shorter timeout than the other calls
QUOTE_STATUS_TIMEOUT_SECONDS = 5.0
INVOICE_USER_AGENT = 'TradingBot/1.0'


class StrikeClient:
    """Safe wrapper around the Strike REST API."""

    def __init__(self, cfg: TradingConfig, session: Optional[requests.Session] = None):
        """
        Initialize the client.

        Args:
            cfg: Trading configuration (API key, base URL, timeout)
            session: Optional requests session (injectable for tests)
        """
        if not cfg.strike_api_key:
            raise StrikeAPIError("Missing STRIKE_API_KEY environment variable")

        self.cfg = cfg
        self.base_url = cfg.strike_base_url.rstrip('/')
        self.session = session or requests.Session()

    def _headers(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        headers = {
            'Authorization': f"Bearer {self.cfg.strike_api_key}",
            'Content-Type': 'application/json'
        }
        if extra:
            headers.update(extra)
        return headers

    def _request(
        self,
        method: str,
        path: str,
        json_body: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
        headers: Optional[Dict[str, str]] = None
    ) -> Any:
        url = f"{self.base_url}{path}"
        try:
            response = self.session.request(
                method,
                url,
                json=json_body,
                headers=self._headers(headers),
                timeout=timeout or self.cfg.strike_timeout
            )
        except requests.exceptions.RequestException as e:
            raise StrikeAPIError(f"{method} {path} failed: {e}")

        if response.status_code >= 400:
            raise StrikeAPIError(
                f"{method} {path} returned HTTP {response.status_code}: {response.text[:200]}",
                status_code=response.status_code
            )

        if not response.content:
            return {}

        try:
            return response.json()
        except ValueError as e:
            raise StrikeAPIError(f"{method} {path} returned invalid JSON: {e}",
                                 status_code=response.status_code)

    # =========================================================================
    # ACCOUNT
    # =========================================================================

    def get_balances(self) -> Dict[str, float]:
        """
        Get available balances.

        Returns:
            Dict of currency -> available amount (EUR and BTC always present)
        """
        data = self._request('GET', '/balances')
        if not isinstance(data, list):
            raise StrikeAPIError(f"Unexpected balances payload: {type(data).__name__}")

        balances = {self.cfg.quote_currency: 0.0, self.cfg.base_currency: 0.0}
        for entry in data:
            currency = entry.get('currency')
            if currency:
                balances[currency] = float(entry.get('available') or 0)

        logger.info(
            f"💳 Balance: {balances[self.cfg.quote_currency]:.2f} {self.cfg.quote_currency}, "
            f"{balances[self.cfg.base_currency]:.8f} {self.cfg.base_currency}"
        )
        return balances

    # =========================================================================
    # QUOTES
    # =========================================================================

    def create_buy_quote(self, amount: float) -> Dict[str, Any]:
        """Quote spending `amount` of the quote currency on the base currency."""
        body = {
            'amount': {
                'amount': f"{amount:.2f}",
                'currency': self.cfg.quote_currency
            },
            'sell': self.cfg.quote_currency,
            'buy': self.cfg.base_currency,
            'feePolicy': 'INCLUSIVE'
        }
        return self._request('POST', '/currency-exchange-quotes', body)

    def create_sell_quote(self, quantity: float) -> Dict[str, Any]:
        """Quote selling `quantity` of the base currency."""
        body = {
            'sourceCurrency': self.cfg.base_currency,
            'targetCurrency': self.cfg.quote_currency,
            'amount': f"{quantity:.8f}"
        }
        return self._request('POST', '/currency-exchange-quotes', body)

    def execute_quote(self, quote_id: str) -> Dict[str, Any]:
        return self._request('PATCH', f"/currency-exchange-quotes/{quote_id}/execute", {})

    def get_quote(self, quote_id: str) -> Dict[str, Any]:
        return self._request('GET', f"/currency-exchange-quotes/{quote_id}",
                             timeout=QUOTE_STATUS_TIMEOUT_SECONDS)

    # =========================================================================
    # INVOICES
    # =========================================================================

    def create_invoice(
        self,
        correlation_id: str,
        description: str,
        amount: str,
        currency: str
    ) -> Dict[str, Any]:
        """
        Create a receipt invoice for a fill.

        Raises:
            StrikeAPIError: HTTP failure or missing invoiceId
        """
        body = {
            'correlationId': correlation_id,
            'description': description[:self.cfg.receipt_description_max_chars],
            'amount': {
                'amount': amount,
                'currency': currency
            },
            'issuer': 'TRADING_BOT',
            'metadata': {
                'tradeId': correlation_id,
                'type': 'BITCOIN_TRADE',
                'timestamp': utc_now().isoformat()
            }
        }

        data = self._request('POST', '/invoices', body,
                             headers={'User-Agent': INVOICE_USER_AGENT})
        if not isinstance(data, dict) or not data.get('invoiceId'):
            raise StrikeAPIError("Invalid invoice response: missing invoiceId")

        logger.info(f"✅ Invoice created: {data['invoiceId']} (correlation {correlation_id})")
        return data


def create_strike_client(cfg: TradingConfig) -> StrikeClient:
    """Factory function to create a StrikeClient."""
    return StrikeClient(cfg)
