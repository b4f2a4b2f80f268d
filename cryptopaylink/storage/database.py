"""
SQLite database storage backend for production use.

Each operation opens its own connection so the store can be shared by
several threads and processes. Status changes are single ``UPDATE ... WHERE
status = ?`` statements and the ``tx_hash`` column carries a unique index.
"""

import logging
import sqlite3
from datetime import datetime
from typing import Any, List, Optional

from ..exceptions import ConfigurationError, DuplicateTransactionError, StorageError, ValidationError
from ..models import PaymentIntent, PaymentStatus, Product
from ..utils import retry
from .base import StorageBackend, StorageCapabilities

logger = logging.getLogger(__name__)

PAYMENT_COLUMNS = (
    "id",
    "product_id",
    "buyer_email",
    "buyer_wallet",
    "price_quote",
    "expected_crypto_amount",
    "display_amount",
    "status",
    "created_at",
    "confirmed_at",
    "tx_hash",
    "attempt_count",
    "error_count",
    "last_polled_at",
    "failure_reason",
    "notified_at",
)

PRODUCT_COLUMNS = (
    "id",
    "name",
    "description",
    "price_usd",
    "chain",
    "currency",
    "recipient_wallet",
    "is_active",
    "created_at",
)


class DatabaseStorage(StorageBackend):
    """
    SQLite database storage backend for production use.
    """

    def __init__(self, db_path: str = "cryptopaylink.db", timeout: float = 10.0):
        self.db_path = db_path
        self.timeout = timeout
        super().__init__("DatabaseStorage")
        self._init_database()
        logger.info("DatabaseStorage initialized with database: %s", db_path)

    def _get_capabilities(self):
        return StorageCapabilities(is_persistent=True, supports_multiple_processes=True, supports_indexing=True)

    def _validate_configuration(self):
        """
        Validate the storage backend configuration.
        Raises:
            ConfigurationError: If the configuration is invalid
        """
        if not self.db_path or not isinstance(self.db_path, str):
            raise ConfigurationError("db_path is required for DatabaseStorage.", config_key="db_path")
        try:
            with open(self.db_path, "a"):
                pass
        except OSError as e:
            raise ConfigurationError(f"Database file {self.db_path} is not writable: {e}", config_key="db_path")

    def _perform_health_check(self):
        with self._connect() as conn:
            conn.execute("SELECT 1")

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=self.timeout)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_database(self):
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS products (
                        id TEXT PRIMARY KEY,
                        name TEXT NOT NULL,
                        description TEXT,
                        price_usd TEXT NOT NULL,
                        chain TEXT NOT NULL,
                        currency TEXT NOT NULL,
                        recipient_wallet TEXT NOT NULL,
                        is_active BOOLEAN DEFAULT 1,
                        created_at TEXT NOT NULL
                    )
                """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS payments (
                        id TEXT PRIMARY KEY,
                        product_id TEXT NOT NULL,
                        buyer_email TEXT NOT NULL,
                        buyer_wallet TEXT NOT NULL,
                        price_quote TEXT NOT NULL,
                        expected_crypto_amount TEXT NOT NULL,
                        display_amount TEXT,
                        status TEXT NOT NULL DEFAULT 'pending',
                        created_at TEXT NOT NULL,
                        confirmed_at TEXT,
                        tx_hash TEXT,
                        attempt_count INTEGER NOT NULL DEFAULT 0,
                        error_count INTEGER NOT NULL DEFAULT 0,
                        last_polled_at TEXT,
                        failure_reason TEXT,
                        notified_at TEXT
                    )
                """
                )
                conn.execute("CREATE UNIQUE INDEX IF NOT EXISTS idx_payments_tx_hash ON payments (tx_hash)")
                conn.execute("CREATE INDEX IF NOT EXISTS idx_payments_product ON payments (product_id)")
                conn.execute("CREATE INDEX IF NOT EXISTS idx_payments_status ON payments (status)")
                conn.commit()
            logger.info("Database tables initialized successfully")
        except sqlite3.Error as e:
            logger.error("Error initializing database: %s", str(e))
            raise StorageError(f"Failed to initialize database: {str(e)}", storage_type=self.name, operation="init")

    @retry(exceptions=sqlite3.OperationalError, max_attempts=3, initial_delay=0.05, logger=logger, retry_message="Retrying DB read...")
    def _fetch(self, query: str, params: tuple = ()) -> List[sqlite3.Row]:
        conn = self._connect()
        try:
            return conn.execute(query, params).fetchall()
        finally:
            conn.close()

    @retry(exceptions=sqlite3.OperationalError, max_attempts=3, initial_delay=0.05, logger=logger, retry_message="Retrying DB write...")
    def _execute(self, query: str, params: tuple = ()) -> int:
        """Run one write statement in its own transaction and return the affected row count."""
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            cursor = conn.execute(query, params)
            conn.commit()
            return cursor.rowcount
        except sqlite3.Error:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _read(self, operation: str, query: str, params: tuple = (), entity_id: Optional[str] = None) -> List[sqlite3.Row]:
        try:
            return self._fetch(query, params)
        except sqlite3.Error as e:
            logger.error("Error during %s: %s", operation, str(e))
            raise StorageError(
                f"Failed to {operation}: {str(e)}", storage_type=self.name, operation=operation, entity_id=entity_id
            )

    def _write(self, operation: str, query: str, params: tuple = (), entity_id: Optional[str] = None) -> int:
        try:
            return self._execute(query, params)
        except sqlite3.IntegrityError:
            raise
        except sqlite3.Error as e:
            logger.error("Error during %s: %s", operation, str(e))
            raise StorageError(
                f"Failed to {operation}: {str(e)}", storage_type=self.name, operation=operation, entity_id=entity_id
            )

    @staticmethod
    def _product_row(product: Product) -> tuple:
        data = product.to_dict()
        return tuple(data[column] for column in PRODUCT_COLUMNS)

    @staticmethod
    def _payment_row(payment: PaymentIntent) -> tuple:
        data = payment.to_dict()
        return tuple(data[column] for column in PAYMENT_COLUMNS)

    @staticmethod
    def _to_payment(row: sqlite3.Row) -> PaymentIntent:
        return PaymentIntent.from_dict(dict(row))

    @staticmethod
    def _to_product(row: sqlite3.Row) -> Product:
        data: dict[str, Any] = dict(row)
        data["is_active"] = bool(data["is_active"])
        return Product.from_dict(data)

    def save_product(self, product: Product) -> None:
        if not isinstance(product, Product):
            raise ValidationError("Invalid product object", field="product", value=product)
        placeholders = ", ".join("?" for _ in PRODUCT_COLUMNS)
        try:
            self._write(
                "save product",
                f"INSERT OR REPLACE INTO products ({', '.join(PRODUCT_COLUMNS)}) VALUES ({placeholders})",
                self._product_row(product),
                entity_id=product.id,
            )
        except sqlite3.IntegrityError as e:
            raise StorageError(f"Failed to save product: {e}", storage_type=self.name, operation="save_product", entity_id=product.id)
        logger.debug("Saved product: %s", product.id)

    def get_product(self, product_id: str) -> Optional[Product]:
        rows = self._read("read product", "SELECT * FROM products WHERE id = ?", (product_id,), entity_id=product_id)
        return self._to_product(rows[0]) if rows else None

    def list_products(self, active_only: bool = False) -> List[Product]:
        query = "SELECT * FROM products"
        if active_only:
            query += " WHERE is_active = 1"
        query += " ORDER BY created_at"
        return [self._to_product(row) for row in self._read("list products", query)]

    def delete_product(self, product_id: str) -> bool:
        deleted = self._write("delete product", "DELETE FROM products WHERE id = ?", (product_id,), entity_id=product_id)
        return deleted > 0

    def create_payment(self, payment: PaymentIntent) -> None:
        if not isinstance(payment, PaymentIntent):
            raise ValidationError("Invalid payment object", field="payment", value=payment)
        placeholders = ", ".join("?" for _ in PAYMENT_COLUMNS)
        try:
            self._write(
                "create payment",
                f"INSERT INTO payments ({', '.join(PAYMENT_COLUMNS)}) VALUES ({placeholders})",
                self._payment_row(payment),
                entity_id=payment.id,
            )
        except sqlite3.IntegrityError as e:
            raise StorageError(
                f"Payment {payment.id} already exists: {e}",
                storage_type=self.name,
                operation="create_payment",
                entity_id=payment.id,
            )
        logger.debug("Created payment: %s", payment.id)

    def get_payment(self, payment_id: str) -> Optional[PaymentIntent]:
        rows = self._read("read payment", "SELECT * FROM payments WHERE id = ?", (payment_id,), entity_id=payment_id)
        return self._to_payment(rows[0]) if rows else None

    def get_payment_by_tx_hash(self, tx_hash: str) -> Optional[PaymentIntent]:
        rows = self._read("read payment by tx hash", "SELECT * FROM payments WHERE tx_hash = ?", (tx_hash,))
        return self._to_payment(rows[0]) if rows else None

    def list_payments(
        self,
        product_id: Optional[str] = None,
        status: Optional[PaymentStatus] = None,
        limit: Optional[int] = None,
    ) -> List[PaymentIntent]:
        query = "SELECT * FROM payments WHERE 1=1"
        params: list[Any] = []
        if product_id is not None:
            query += " AND product_id = ?"
            params.append(product_id)
        if status is not None:
            query += " AND status = ?"
            params.append(PaymentStatus(status).value)
        query += " ORDER BY created_at"
        if limit:
            query += " LIMIT ?"
            params.append(int(limit))
        return [self._to_payment(row) for row in self._read("list payments", query, tuple(params))]

    def record_poll(
        self, payment_id: str, polled_at: datetime, attempt_increment: int = 0, error_increment: int = 0
    ) -> Optional[PaymentIntent]:
        updated = self._write(
            "record poll",
            """
            UPDATE payments
            SET attempt_count = attempt_count + ?, error_count = error_count + ?, last_polled_at = ?
            WHERE id = ? AND status = ?
            """,
            (attempt_increment, error_increment, polled_at.isoformat(), payment_id, PaymentStatus.PENDING.value),
            entity_id=payment_id,
        )
        if not updated:
            return None
        return self.get_payment(payment_id)

    def confirm_payment(self, payment_id: str, tx_hash: str, confirmed_at: datetime) -> bool:
        try:
            updated = self._write(
                "confirm payment",
                "UPDATE payments SET status = ?, tx_hash = ?, confirmed_at = ? WHERE id = ? AND status = ?",
                (
                    PaymentStatus.CONFIRMED.value,
                    tx_hash,
                    confirmed_at.isoformat(),
                    payment_id,
                    PaymentStatus.PENDING.value,
                ),
                entity_id=payment_id,
            )
        except sqlite3.IntegrityError as e:
            raise DuplicateTransactionError(
                f"Transaction {tx_hash} already confirmed another payment: {e}",
                storage_type=self.name,
                operation="confirm_payment",
                entity_id=payment_id,
                tx_hash=tx_hash,
            )
        return updated > 0

    def fail_payment(self, payment_id: str, reason: str) -> bool:
        updated = self._write(
            "fail payment",
            "UPDATE payments SET status = ?, failure_reason = ? WHERE id = ? AND status = ?",
            (PaymentStatus.FAILED.value, reason, payment_id, PaymentStatus.PENDING.value),
            entity_id=payment_id,
        )
        return updated > 0

    def claim_notification(self, payment_id: str, notified_at: datetime) -> bool:
        updated = self._write(
            "claim notification",
            "UPDATE payments SET notified_at = ? WHERE id = ? AND status = ? AND notified_at IS NULL",
            (notified_at.isoformat(), payment_id, PaymentStatus.CONFIRMED.value),
            entity_id=payment_id,
        )
        return updated > 0
