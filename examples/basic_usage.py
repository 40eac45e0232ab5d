#!/usr/bin/env python3
"""
Programmatic Tool Calling - basic example

Serves the tool bridge with uvicorn, runs code in the local sandbox, and
prints the reconstructed tool call trace.

Usage:
    # Run a fixed analysis script against the sales tools
    python basic_usage.py

    # Let Claude write the code (needs ANTHROPIC_API_KEY or AWS credentials)
    python basic_usage.py --agent "Which region had the highest revenue?"

    # Verbose logging
    python basic_usage.py -v

Requirements:
    pip install -e ".[server]"
"""

import argparse
import asyncio
import logging
import os

import uvicorn

from ptc_bridge import (
    CodeModeAgent,
    ExecutionConfig,
    HTTPToolBridgeProtocol,
    LocalSandboxProvider,
    ProgrammaticToolOrchestrator,
    TokenConfig,
    ToolBridgeConfig,
    create_asgi_app,
    show_execution_result,
)

logger = logging.getLogger(__name__)

BRIDGE_HOST = "127.0.0.1"
BRIDGE_PORT = 8765


# ============================================================
# Mock data (replace with real services)
# ============================================================

MOCK_SALES_DATA = {
    "East": [
        {"date": "2024-01-15", "product": "Widget A", "revenue": 15000, "units": 150},
        {"date": "2024-01-20", "product": "Widget B", "revenue": 22000, "units": 110},
        {"date": "2024-02-01", "product": "Widget A", "revenue": 18000, "units": 180},
    ],
    "West": [
        {"date": "2024-01-10", "product": "Widget A", "revenue": 25000, "units": 250},
        {"date": "2024-01-25", "product": "Widget C", "revenue": 30000, "units": 100},
    ],
    "Central": [
        {"date": "2024-01-12", "product": "Widget B", "revenue": 45000, "units": 225},
        {"date": "2024-02-03", "product": "Widget C", "revenue": 52000, "units": 173},
    ],
}

PRODUCTS = {
    "Widget A": {"name": "Widget A", "price": 100, "category": "Electronics"},
    "Widget B": {"name": "Widget B", "price": 200, "category": "Electronics"},
    "Widget C": {"name": "Widget C", "price": 300, "category": "Premium"},
}

ANALYSIS_CODE = """
totals = {}
for region in ["East", "West", "Central"]:
    rows = await tools.query_sales({"region": region})
    totals[region] = sum(row["revenue"] for row in rows)

best = max(totals, key=totals.get)
print(f"Revenue by region: {totals}")
print(f"Best region: {best}")

try:
    await tools.get_product_info({"product_name": "Widget A"})
except ToolCallError as e:
    print(f"Product lookup rejected: {e.code}")
"""


# ============================================================
# Orchestrator setup
# ============================================================

def create_orchestrator() -> ProgrammaticToolOrchestrator:
    secret_key = os.environ.get("TOOL_BRIDGE_SECRET") or os.urandom(32).hex()

    orchestrator = ProgrammaticToolOrchestrator(
        sandbox_provider=LocalSandboxProvider(),
        bridge_protocol=HTTPToolBridgeProtocol(),
        bridge_config=ToolBridgeConfig(
            server_url=f"http://{BRIDGE_HOST}:{BRIDGE_PORT}/api/tool-bridge",
            token_config=TokenConfig(secret_key=secret_key),
            default_rate_limit=30,
        ),
    )

    @orchestrator.tool(required_scopes=["sales:read"])
    def query_sales(region: str, start_date: str | None = None, end_date: str | None = None) -> list[dict]:
        """Query the sales database. Returns date, product, revenue and units per sale."""
        data = MOCK_SALES_DATA.get(region, [])
        if start_date:
            data = [d for d in data if d["date"] >= start_date]
        if end_date:
            data = [d for d in data if d["date"] <= end_date]
        return data

    @orchestrator.tool(
        description="Get price and category for a product",
        required_scopes=["catalog:read"],
        output_schema={
            "type": "object",
            "properties": {
                "name": {"type": "string"},
                "price": {"type": "number"},
                "category": {"type": "string"},
            },
            "required": ["name", "price", "category"],
        },
    )
    def get_product_info(product_name: str) -> dict:
        return PRODUCTS.get(product_name, {"name": "Unknown", "price": 0, "category": "Unknown"})

    return orchestrator


async def serve_bridge(orchestrator: ProgrammaticToolOrchestrator) -> tuple[uvicorn.Server, asyncio.Task]:
    app = create_asgi_app(orchestrator.get_request_handler())
    server = uvicorn.Server(uvicorn.Config(app, host=BRIDGE_HOST, port=BRIDGE_PORT, log_level="warning"))
    task = asyncio.create_task(server.serve())
    while not server.started:
        await asyncio.sleep(0.05)
    logger.info(f"Tool bridge listening on http://{BRIDGE_HOST}:{BRIDGE_PORT}")
    return server, task


# ============================================================
# Examples
# ============================================================

async def run_script(orchestrator: ProgrammaticToolOrchestrator) -> None:
    """Only sales:read is granted, so the product lookup is rejected with FORBIDDEN"""
    print(orchestrator.get_tool_type_declarations())
    result = await orchestrator.execute_code(
        ANALYSIS_CODE,
        ExecutionConfig(user_id="analyst-1", scopes=["sales:read"], timeout_ms=30000),
    )
    show_execution_result(result)


async def run_agent(orchestrator: ProgrammaticToolOrchestrator, question: str) -> None:
    agent = CodeModeAgent(orchestrator, api_key=os.environ.get("ANTHROPIC_API_KEY"))
    agent.config.execution_config = ExecutionConfig(user_id="analyst-1", scopes=["*"])
    answer = await agent.run(question)
    for result in agent.last_results:
        show_execution_result(result)
    print(f"\nClaude: {answer}")


async def main() -> None:
    parser = argparse.ArgumentParser(description="Programmatic Tool Calling example")
    parser.add_argument("--agent", metavar="QUESTION", help="Ask Claude instead of running the fixed script")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    orchestrator = create_orchestrator()
    await orchestrator.initialize()
    server, server_task = await serve_bridge(orchestrator)
    try:
        if args.agent:
            await run_agent(orchestrator, args.agent)
        else:
            await run_script(orchestrator)
    finally:
        server.should_exit = True
        await server_task
        await orchestrator.cleanup()


if __name__ == "__main__":
    asyncio.run(main())
