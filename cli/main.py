"""
Command-line interface for CryptoPayLink.
"""

import argparse
import json
import os
import sys
from decimal import Decimal

from cryptopaylink import PaymentEngine, Product
from cryptopaylink.chains import build_default_watchers
from cryptopaylink.config import ENABLED_STORAGE, SUPPORTED_ASSETS, get_config_summary
from cryptopaylink.exceptions import ConfigurationError, CryptoPayLinkError, NotFoundError, ValidationError
from cryptopaylink.logging_config import setup_logging
from cryptopaylink.oracle import CoinGeckoPriceOracle, StaticPriceOracle
from cryptopaylink.storage import create_storage


def parse_prices(values: list[str]) -> dict[str, Decimal]:
    prices = {}
    for value in values or []:
        symbol, sep, price = value.partition("=")
        if not sep or not symbol.strip() or not price.strip():
            raise ValueError(f"Invalid --price value '{value}', expected SYMBOL=USD")
        prices[symbol.strip().upper()] = Decimal(price.strip())
    return prices


def create_engine(args: argparse.Namespace) -> PaymentEngine:
    if args.storage not in ENABLED_STORAGE:
        raise ValueError(f"Storage backend '{args.storage}' is disabled in configuration.")
    if args.storage == "database":
        storage = create_storage("database", db_path=args.storage_path)
    else:
        storage = create_storage("memory")
    prices = parse_prices(args.price)
    if prices:
        oracle = StaticPriceOracle(prices)
    else:
        oracle = CoinGeckoPriceOracle(api_key=args.coingecko_api_key)
    return PaymentEngine(
        storage=storage,
        oracle=oracle,
        watchers=build_default_watchers(args.solana_rpc_url, args.ethereum_rpc_url),
        poll_interval=args.poll_interval,
        auto_start_polling=False,
    )


def print_payment(payment, product=None) -> None:
    print(f"Payment {payment.id}:")
    print(f"  Product: {payment.product_id}")
    print(f"  Status: {payment.status.value}")
    amount = payment.display_amount if payment.display_amount is not None else payment.expected_crypto_amount
    currency = f" {product.currency}" if product else ""
    print(f"  Amount due: {amount}{currency}")
    if product:
        print(f"  Send to: {product.recipient_wallet} on {product.chain.value}")
    print(f"  Attempts: {payment.attempt_count} (transient errors: {payment.error_count})")
    if payment.tx_hash:
        print(f"  Transaction: {payment.tx_hash}")
    if payment.confirmed_at:
        print(f"  Confirmed at: {payment.confirmed_at.isoformat()}")
    if payment.failure_reason:
        print(f"  Failure reason: {payment.failure_reason}")


def cmd_config(args: argparse.Namespace) -> None:
    print(json.dumps(get_config_summary(), indent=2, sort_keys=True))


def cmd_add_product(args: argparse.Namespace) -> None:
    try:
        engine = create_engine(args)
        product = engine.register_product(
            Product(
                id=args.product_id,
                name=args.name,
                price_usd=args.price_usd,
                chain=args.chain,
                currency=args.currency,
                recipient_wallet=args.wallet,
                description=args.description,
            )
        )
        print(f"Product {product.id} registered: {product.name} at ${product.price_usd} paid in {product.currency}")
    except (ValidationError, ConfigurationError) as e:
        print(f"Product error: {e}")
        sys.exit(1)
    except Exception as e:
        print(f"Unexpected error: {e}")
        sys.exit(1)


def cmd_products(args: argparse.Namespace) -> None:
    try:
        engine = create_engine(args)
        products = engine.list_products(active_only=not args.all)
        if not products:
            print("No products found.")
            return
        print("Products:")
        for product in products:
            state = "active" if product.is_active else "inactive"
            print(f"\n{product.name} ({product.id}) [{state}]:")
            if product.description:
                print(f"  Description: {product.description}")
            print(f"  Price: ${product.price_usd}")
            print(f"  Paid in: {product.currency} on {product.chain.value}")
            print(f"  Wallet: {product.recipient_wallet}")
    except (ValidationError, ConfigurationError) as e:
        print(f"Products error: {e}")
        sys.exit(1)
    except Exception as e:
        print(f"Unexpected error: {e}")
        sys.exit(1)


def cmd_deactivate(args: argparse.Namespace) -> None:
    try:
        engine = create_engine(args)
        product = engine.deactivate_product(args.product_id)
        print(f"Product {product.id} deactivated")
    except (ValidationError, NotFoundError) as e:
        print(f"Deactivate error: {e}")
        sys.exit(1)
    except Exception as e:
        print(f"Unexpected error: {e}")
        sys.exit(1)


def cmd_delete(args: argparse.Namespace) -> None:
    try:
        engine = create_engine(args)
        engine.delete_product(args.product_id)
        print(f"Product {args.product_id} deleted")
    except (ValidationError, NotFoundError) as e:
        print(f"Delete error: {e}")
        sys.exit(1)
    except Exception as e:
        print(f"Unexpected error: {e}")
        sys.exit(1)


def cmd_quote(args: argparse.Namespace) -> None:
    try:
        engine = create_engine(args)
        product = engine.get_active_product(args.product_id)
        asset_price = engine.oracle.fetch_price_with_retry(product.currency)
        quote = engine.reconciler.quote(product.price_usd, asset_price)
        print(f"Quote for {product.name} (${product.price_usd}):")
        print(f"  {product.currency} price: ${quote.asset_price}")
        print(f"  Amount due: {quote.display_amount} {product.currency}")
        print(f"  Minimum accepted: {engine.reconciler.minimum_acceptable(quote.expected_amount)} {product.currency}")
    except CryptoPayLinkError as e:
        print(f"Quote error: {e}")
        sys.exit(1)
    except Exception as e:
        print(f"Unexpected error: {e}")
        sys.exit(1)


def cmd_create_payment(args: argparse.Namespace) -> None:
    try:
        engine = create_engine(args)
        payment = engine.create_payment(args.product_id, args.email, args.wallet)
        print_payment(payment, engine.get_product(payment.product_id))
    except CryptoPayLinkError as e:
        print(f"Payment error: {e}")
        sys.exit(1)
    except Exception as e:
        print(f"Unexpected error: {e}")
        sys.exit(1)


def cmd_verify(args: argparse.Namespace) -> None:
    try:
        engine = create_engine(args)
        payment = engine.verify_payment(args.payment_id)
        print_payment(payment, engine.storage.get_product(payment.product_id))
    except CryptoPayLinkError as e:
        print(f"Verify error: {e}")
        sys.exit(1)
    except Exception as e:
        print(f"Unexpected error: {e}")
        sys.exit(1)


def cmd_watch(args: argparse.Namespace) -> None:
    try:
        engine = create_engine(args)
        if engine.scheduler.start(args.payment_id):
            print(f"Watching payment {args.payment_id} (Ctrl+C to stop)...")
            try:
                engine.scheduler.join(args.payment_id, args.timeout)
            except KeyboardInterrupt:
                print("\nStopping...")
            engine.shutdown()
        payment = engine.get_payment(args.payment_id)
        print_payment(payment, engine.storage.get_product(payment.product_id))
    except CryptoPayLinkError as e:
        print(f"Watch error: {e}")
        sys.exit(1)
    except Exception as e:
        print(f"Unexpected error: {e}")
        sys.exit(1)


def cmd_status(args: argparse.Namespace) -> None:
    try:
        engine = create_engine(args)
        payment = engine.get_payment(args.payment_id)
        print_payment(payment, engine.storage.get_product(payment.product_id))
    except CryptoPayLinkError as e:
        print(f"Status error: {e}")
        sys.exit(1)
    except Exception as e:
        print(f"Unexpected error: {e}")
        sys.exit(1)


def cmd_summary(args: argparse.Namespace) -> None:
    try:
        engine = create_engine(args)
        summary = engine.sales_summary(args.product_id)
        print(f"Sales summary for {args.product_id or 'all products'}:")
        print(f"  Confirmed: {summary['confirmed_count']}")
        print(f"  Pending: {summary['pending_count']}")
        print(f"  Failed: {summary['failed_count']}")
        print(f"  Revenue: ${summary['revenue_usd']}")
    except CryptoPayLinkError as e:
        print(f"Summary error: {e}")
        sys.exit(1)
    except Exception as e:
        print(f"Unexpected error: {e}")
        sys.exit(1)


def cmd_serve(args: argparse.Namespace) -> None:
    from cryptopaylink.api import create_app

    engine = create_engine(args)
    engine.auto_start_polling = True
    resumed = engine.start()
    print(f"Resumed verification for {resumed} pending payments")
    try:
        create_app(engine).run(host=args.host, port=args.port)
    finally:
        engine.shutdown()


def main() -> None:
    chains = sorted(SUPPORTED_ASSETS)
    parser = argparse.ArgumentParser(
        description="CryptoPayLink Command Line Interface",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s --storage database add-product ebook "Python eBook" 10 solana SOL <wallet>
  %(prog)s --price SOL=20 quote ebook
  %(prog)s create-payment ebook buyer@example.com <buyer-wallet>
  %(prog)s watch pay_...
  %(prog)s summary
  %(prog)s serve --port 8000
        """,
    )
    parser.add_argument(
        "--storage",
        choices=ENABLED_STORAGE,
        default="database" if "database" in ENABLED_STORAGE else ENABLED_STORAGE[0],
        help="Storage backend to use",
    )
    parser.add_argument("--storage-path", default="cryptopaylink.db", help="Path for database storage")
    parser.add_argument(
        "--price",
        action="append",
        metavar="SYMBOL=USD",
        help="Use a fixed USD price instead of CoinGecko (repeatable)",
    )
    parser.add_argument("--coingecko-api-key", help="CoinGecko Pro API key")
    parser.add_argument("--solana-rpc-url", help="Solana JSON-RPC endpoint")
    parser.add_argument("--ethereum-rpc-url", help="Ethereum JSON-RPC endpoint")
    parser.add_argument("--poll-interval", type=float, help="Seconds between verification polls")
    parser.add_argument(
        "--log-level",
        type=str.upper,
        default=os.environ.get("CryptoPayLink_LogLevel", "WARNING"),
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Log level",
    )
    parser.add_argument("--log-file", default=os.environ.get("CryptoPayLink_LogFile"), help="Also log to this file")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    config_parser = subparsers.add_parser("config", help="Show effective configuration")
    config_parser.set_defaults(func=cmd_config)

    add_parser = subparsers.add_parser("add-product", help="Register a product")
    add_parser.add_argument("product_id", help="Product ID")
    add_parser.add_argument("name", help="Product name")
    add_parser.add_argument("price_usd", help="Price in USD")
    add_parser.add_argument("chain", choices=chains, help="Chain the product is paid on")
    add_parser.add_argument("currency", help="Asset symbol, e.g. SOL or USDC")
    add_parser.add_argument("wallet", help="Recipient wallet address")
    add_parser.add_argument("--description", help="Product description")
    add_parser.set_defaults(func=cmd_add_product)

    products_parser = subparsers.add_parser("products", help="List products")
    products_parser.add_argument("--all", action="store_true", help="Include inactive products")
    products_parser.set_defaults(func=cmd_products)

    deactivate_parser = subparsers.add_parser("deactivate", help="Stop selling a product")
    deactivate_parser.add_argument("product_id", help="Product ID")
    deactivate_parser.set_defaults(func=cmd_deactivate)

    delete_parser = subparsers.add_parser("delete", help="Delete a product without confirmed payments")
    delete_parser.add_argument("product_id", help="Product ID")
    delete_parser.set_defaults(func=cmd_delete)

    quote_parser = subparsers.add_parser("quote", help="Show the crypto amount due for a product")
    quote_parser.add_argument("product_id", help="Product ID")
    quote_parser.set_defaults(func=cmd_quote)

    create_parser = subparsers.add_parser("create-payment", help="Open a pending payment")
    create_parser.add_argument("product_id", help="Product ID")
    create_parser.add_argument("email", help="Buyer email")
    create_parser.add_argument("wallet", help="Buyer wallet address")
    create_parser.set_defaults(func=cmd_create_payment)

    verify_parser = subparsers.add_parser("verify", help="Check the chain once for a payment")
    verify_parser.add_argument("payment_id", help="Payment ID")
    verify_parser.set_defaults(func=cmd_verify)

    watch_parser = subparsers.add_parser("watch", help="Poll the chain until a payment settles")
    watch_parser.add_argument("payment_id", help="Payment ID")
    watch_parser.add_argument("--timeout", type=float, help="Give up watching after this many seconds")
    watch_parser.set_defaults(func=cmd_watch)

    status_parser = subparsers.add_parser("status", help="Show payment status")
    status_parser.add_argument("payment_id", help="Payment ID")
    status_parser.set_defaults(func=cmd_status)

    summary_parser = subparsers.add_parser("summary", help="Show confirmed sales and revenue")
    summary_parser.add_argument("--product-id", help="Limit to one product")
    summary_parser.set_defaults(func=cmd_summary)

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP API")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Bind address")
    serve_parser.add_argument("--port", type=int, default=8000, help="Port")
    serve_parser.set_defaults(func=cmd_serve)

    args = parser.parse_args()
    if not args.command:
        parser.print_help()
        sys.exit(1)
    try:
        setup_logging(level=args.log_level, log_file=args.log_file, clear_handlers=True)
        args.func(args)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
