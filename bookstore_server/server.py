"""MCP Server for the bookstore cart."""

import asyncio
import logging
from typing import Any, Optional

from mcp.server import Server
from mcp.types import Resource, Tool, TextContent
from pydantic import AnyUrl

from .auth import AuthManager
from .bookstore_client import BookstoreClient
from .config import get_settings
from .coordinator import CartCoordinator
from .models import AuthCredentials, CartSnapshot, CartTotals, MutationOutcome

logger = logging.getLogger("bookstore-mcp-server")

# Initialize server
app = Server("bookstore-mcp-server")

# Global state
auth_manager: AuthManager
bookstore_client: BookstoreClient
coordinator: CartCoordinator
credentials: Optional[AuthCredentials] = None

NOT_AUTHENTICATED = (
    "Error: Not authenticated. Please configure BOOKSTORE_EMAIL and BOOKSTORE_PASSWORD "
    "or call bookstore_login."
)


async def ensure_authenticated() -> bool:
    """Ensure the client is authenticated, auto-login if credentials are available."""
    if auth_manager.is_authenticated():
        return True

    if credentials:
        logger.info("Auto-logging in with configured credentials...")
        success = await bookstore_client.login(credentials)
        if success:
            logger.info("Auto-login successful")
            await coordinator.refresh_snapshot()
            return True
        logger.warning("Auto-login failed")

    return False


def format_cart(snapshot: CartSnapshot, totals: CartTotals) -> str:
    """Render the cart as readable text."""
    if not snapshot.lines:
        return "Your cart is empty"

    result_lines = [f"Shopping Cart ({len(snapshot.lines)} lines, {totals.item_count} selected items):\n"]
    for i, line in enumerate(snapshot.lines, 1):
        marker = "[x]" if line.id in snapshot.selected_ids else "[ ]"
        result_lines.append(f"\n{i}. {marker} {line.name}")
        result_lines.append(f"   Line ID: {line.id}")
        if line.product is not None and line.product.author:
            result_lines.append(f"   Author: {line.product.author}")
        result_lines.append(f"   Price: ${line.unit_price:.2f}")
        result_lines.append(f"   Quantity: {line.quantity}")
        if line.stock_ceiling is not None:
            result_lines.append(f"   In stock: {line.stock_ceiling}")
        result_lines.append(f"   Subtotal: ${line.total_price:.2f}")

    result_lines.append(f"\n{'='*50}")
    result_lines.append(f"Subtotal: ${totals.subtotal:.2f}")
    result_lines.append(f"Shipping: ${totals.shipping:.2f}")
    if snapshot.applied_coupon is not None:
        result_lines.append(f"Coupon {snapshot.applied_coupon.code}: -${totals.discount:.2f}")
    result_lines.append(f"Total: ${totals.total:.2f}")
    return "\n".join(result_lines)


def format_outcome(outcome: MutationOutcome) -> str:
    if outcome.success:
        return outcome.message or "Done"
    reason = outcome.kind.value if outcome.kind else "remote_rejected"
    text = f"Failed ({reason}): {outcome.message}"
    if outcome.superseded:
        text += " [replaced by a newer change]"
    if outcome.remaining_stock is not None:
        text += f" [remaining stock: {outcome.remaining_stock}]"
    return text


@app.list_resources()
async def list_resources() -> list[Resource]:
    """List available resources."""
    resources = []

    if auth_manager.is_authenticated():
        resources.append(
            Resource(
                uri=AnyUrl("bookstore://cart"),
                name="Shopping Cart",
                mimeType="application/json",
                description="Current shopping cart contents",
            )
        )

    return resources


@app.read_resource()
async def read_resource(uri: AnyUrl) -> str:
    """Read a resource by URI."""
    if str(uri) == "bookstore://cart":
        if not auth_manager.is_authenticated():
            return "Error: Not authenticated. Please login first."

        return coordinator.snapshot().model_dump_json(indent=2)

    raise ValueError(f"Unknown resource: {uri}")


@app.list_tools()
async def list_tools() -> list[Tool]:
    """List available tools."""
    line_id_property = {"type": "integer", "description": "Cart line ID (from bookstore_get_cart)"}
    confirm_property = {
        "type": "boolean",
        "description": "Set to true once the user has confirmed this action",
        "default": False,
    }
    return [
        Tool(
            name="bookstore_login",
            description="Authenticate with the bookstore. Uses credentials from environment (BOOKSTORE_EMAIL, BOOKSTORE_PASSWORD) if not provided.",
            inputSchema={
                "type": "object",
                "properties": {
                    "email": {"type": "string", "description": "User email address"},
                    "password": {"type": "string", "description": "User password"},
                },
            },
        ),
        Tool(
            name="bookstore_logout",
            description="Logout from the bookstore and clear session",
            inputSchema={"type": "object", "properties": {}},
        ),
        Tool(
            name="bookstore_get_cart",
            description="Show the shopping cart as currently known, with totals for the selected lines",
            inputSchema={"type": "object", "properties": {}},
        ),
        Tool(
            name="bookstore_refresh_cart",
            description="Re-fetch the shopping cart from the store",
            inputSchema={"type": "object", "properties": {}},
        ),
        Tool(
            name="bookstore_add_to_cart",
            description="Add a book to the shopping cart",
            inputSchema={
                "type": "object",
                "properties": {
                    "product_id": {"type": "integer", "description": "Product ID to add"},
                    "quantity": {"type": "integer", "description": "Quantity to add (default: 1)", "default": 1},
                },
                "required": ["product_id"],
            },
        ),
        Tool(
            name="bookstore_update_cart_quantity",
            description="Set the quantity of a cart line",
            inputSchema={
                "type": "object",
                "properties": {
                    "line_id": line_id_property,
                    "quantity": {"type": "integer", "description": "New quantity to set"},
                },
                "required": ["line_id", "quantity"],
            },
        ),
        Tool(
            name="bookstore_remove_from_cart",
            description="Remove a line from the shopping cart",
            inputSchema={
                "type": "object",
                "properties": {"line_id": line_id_property, "confirm": confirm_property},
                "required": ["line_id"],
            },
        ),
        Tool(
            name="bookstore_clear_cart",
            description="Remove every line from the shopping cart",
            inputSchema={"type": "object", "properties": {"confirm": confirm_property}},
        ),
        Tool(
            name="bookstore_select_line",
            description="Include or exclude a cart line from the checkout totals",
            inputSchema={
                "type": "object",
                "properties": {
                    "line_id": line_id_property,
                    "selected": {"type": "boolean", "description": "Whether the line is selected", "default": True},
                },
                "required": ["line_id"],
            },
        ),
        Tool(
            name="bookstore_apply_coupon",
            description="Apply a coupon code to the selected cart lines",
            inputSchema={
                "type": "object",
                "properties": {"code": {"type": "string", "description": "Coupon code"}},
                "required": ["code"],
            },
        ),
        Tool(
            name="bookstore_remove_coupon",
            description="Remove the applied coupon",
            inputSchema={"type": "object", "properties": {}},
        ),
    ]


@app.call_tool()
async def call_tool(name: str, arguments: Any) -> list[TextContent]:
    """Handle tool calls."""
    arguments = arguments or {}
    try:
        if name == "bookstore_login":
            email = arguments.get("email")
            password = arguments.get("password")

            if not email or not password:
                if credentials:
                    email = email or credentials.email
                    password = password or credentials.password
                else:
                    return [
                        TextContent(
                            type="text",
                            text="Error: No credentials provided and BOOKSTORE_EMAIL/BOOKSTORE_PASSWORD not configured.",
                        )
                    ]

            success = await bookstore_client.login(AuthCredentials(email=email, password=password))
            if not success:
                return [TextContent(type="text", text="Login failed. Please check your credentials.")]

            await coordinator.refresh_snapshot()
            return [TextContent(type="text", text=f"Successfully logged in as {email}")]

        elif name == "bookstore_logout":
            bookstore_client.logout()
            return [TextContent(type="text", text="Successfully logged out")]

        if not await ensure_authenticated():
            return [TextContent(type="text", text=NOT_AUTHENTICATED)]

        if name == "bookstore_get_cart":
            text = format_cart(coordinator.snapshot(), coordinator.totals())
            return [TextContent(type="text", text=text)]

        elif name == "bookstore_refresh_cart":
            outcome = await coordinator.refresh_snapshot()
            if not outcome.success:
                return [TextContent(type="text", text=format_outcome(outcome))]
            text = format_cart(coordinator.snapshot(), coordinator.totals())
            return [TextContent(type="text", text=text)]

        elif name == "bookstore_add_to_cart":
            outcome = await coordinator.add_item(int(arguments["product_id"]), int(arguments.get("quantity", 1)))

        elif name == "bookstore_update_cart_quantity":
            outcome = await coordinator.set_quantity(int(arguments["line_id"]), int(arguments["quantity"]))

        elif name == "bookstore_remove_from_cart":
            outcome = await coordinator.remove_line(
                int(arguments["line_id"]), confirmed=bool(arguments.get("confirm", False))
            )

        elif name == "bookstore_clear_cart":
            outcome = await coordinator.clear_all(confirmed=bool(arguments.get("confirm", False)))

        elif name == "bookstore_select_line":
            outcome = coordinator.toggle_selection(int(arguments["line_id"]), bool(arguments.get("selected", True)))

        elif name == "bookstore_apply_coupon":
            outcome = await coordinator.apply_coupon(arguments["code"])

        elif name == "bookstore_remove_coupon":
            outcome = coordinator.remove_coupon()

        else:
            return [TextContent(type="text", text=f"Unknown tool: {name}")]

        return [TextContent(type="text", text=format_outcome(outcome))]

    except Exception as e:
        logger.error(f"Error executing tool {name}: {e}", exc_info=True)
        return [TextContent(type="text", text=f"Error: {str(e)}")]


def init_state() -> None:
    """Build the client, coordinator and credentials from settings."""
    global auth_manager, bookstore_client, coordinator, credentials

    settings = get_settings()
    auth_manager = AuthManager(session_file=settings.session_file)
    bookstore_client = BookstoreClient(
        auth_manager,
        base_url=settings.api_base_url,
        timeout=settings.request_timeout,
        verify=settings.verify_ssl,
    )
    coordinator = CartCoordinator(
        bookstore_client,
        shipping_fee=settings.shipping_fee,
        refresh_after_failures=settings.refresh_after_failures,
    )

    if settings.email and settings.password:
        credentials = AuthCredentials(email=settings.email, password=settings.password)
        logger.info(f"Credentials loaded from environment for: {settings.email}")
    else:
        credentials = None
        logger.warning("No credentials found in environment variables (BOOKSTORE_EMAIL, BOOKSTORE_PASSWORD)")
        logger.warning("Cart operations will require manual login via bookstore_login tool")


async def main() -> None:
    """Main entry point for the MCP server."""
    logging.basicConfig(level=get_settings().log_level.upper())
    init_state()

    if auth_manager.is_authenticated():
        await coordinator.refresh_snapshot()

    logger.info("Starting Bookstore MCP Server...")

    from mcp.server.stdio import stdio_server

    try:
        async with stdio_server() as (read_stream, write_stream):
            await app.run(
                read_stream,
                write_stream,
                app.create_initialization_options(),
            )
    finally:
        await coordinator.wait_idle()
        await bookstore_client.aclose()


if __name__ == "__main__":
    asyncio.run(main())
