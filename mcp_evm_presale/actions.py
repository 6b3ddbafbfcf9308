import os
import time
from typing import Any, Dict, Tuple

from flask import Flask, request, jsonify

from mcp_evm_presale import config
from mcp_evm_presale import sale_manager
from mcp_evm_presale import stats
from mcp_evm_presale.errors import ChainCallError, error_message
from mcp_evm_presale.evm_utils import ChainReader, RpcTransport
from mcp_evm_presale.phases import render_phase_board
from mcp_evm_presale.schemas import SaleConfig

from mcp.server.fastmcp.utilities.logging import get_logger
logger = get_logger(__name__)


# --- CORS Headers ---
# Security: In production, set CORS_ALLOWED_ORIGINS instead of '*'
CORS_ALLOWED_ORIGINS = config.CORS_ALLOWED_ORIGINS


def get_cors_headers(origin: str) -> Dict[str, str]:
    """Get CORS headers with origin validation."""
    allowed_origin = "*"
    if "*" not in CORS_ALLOWED_ORIGINS:
        if origin in CORS_ALLOWED_ORIGINS:
            allowed_origin = origin
        else:
            allowed_origin = CORS_ALLOWED_ORIGINS[0] if CORS_ALLOWED_ORIGINS else "null"

    return {
        'Access-Control-Allow-Origin': allowed_origin,
        'Access-Control-Allow-Methods': 'GET, OPTIONS',
        'Access-Control-Allow-Headers': 'Content-Type',
        'Access-Control-Max-Age': '3600',
        'Access-Control-Allow-Credentials': 'false'
    }


async def _read_stats(sale_config: SaleConfig) -> Dict[str, Any]:
    """One-shot read of the global sale figures over the configured rpc_url."""
    if not sale_config.rpc_url:
        return {"available": False, "reason": "rpc_url is not configured"}

    transport = RpcTransport(sale_config.rpc_url)
    try:
        snapshot = await stats.compute_stats(sale_config, ChainReader(transport))
        return {"available": True, **stats.describe_stats(snapshot, sale_config)}
    except (ChainCallError, ValueError) as e:
        logger.warning(f"Stats read failed: {e}")
        return {"available": False, "reason": error_message(e)}
    finally:
        await transport.aclose()


def create_app(sale_config: SaleConfig) -> Flask:
    """Builds the read-only status API for one sale."""
    app = Flask(__name__)

    @app.route('/presale/status', methods=['OPTIONS'])
    @app.route('/presale/phases', methods=['OPTIONS'])
    def handle_options() -> Tuple[str, int, Dict[str, str]]:
        """Handles CORS preflight requests."""
        origin = request.headers.get('Origin', '*')
        return '', 204, get_cors_headers(origin)

    @app.route('/presale/phases', methods=['GET'])
    def get_phases() -> Tuple[Any, int, Dict[str, str]]:
        """Returns the phase board at the current time."""
        cors_headers = get_cors_headers(request.headers.get('Origin', '*'))
        board = render_phase_board(sale_config, time.time())
        return jsonify(board.model_dump(mode='json')), 200, cors_headers

    @app.route('/presale/status', methods=['GET'])
    async def get_status() -> Tuple[Any, int, Dict[str, str]]:
        """Returns the sale summary, the phase board and the global figures."""
        cors_headers = get_cors_headers(request.headers.get('Origin', '*'))
        try:
            board = render_phase_board(sale_config, time.time())
            body = {
                "sale": sale_manager.describe_config(sale_config),
                "phase": {
                    "active_label": board.active_label,
                    "countdown": board.countdown,
                    "state": board.resolution.kind.value,
                },
                "stats": await _read_stats(sale_config),
            }
            return jsonify(body), 200, cors_headers
        except Exception as e:
            logger.exception(f"Unexpected error in get_status: {e}")
            return jsonify({"message": "An unexpected server error occurred"}), 500, cors_headers

    return app


# --- Main Execution (for running Flask app directly) ---
if __name__ == '__main__':
    app = create_app(sale_manager.load_sale_config())
    port = config.ACTIONS_PORT
    logger.info(f"Starting Flask status API server on port {port}...")
    # Consider using a production server like gunicorn instead of Flask's dev server
    app.run(debug=os.getenv("FLASK_DEBUG", "False").lower() == "true", port=port, host="0.0.0.0")
