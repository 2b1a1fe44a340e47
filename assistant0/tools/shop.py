from __future__ import annotations

import logging
from typing import Any

from pydantic import BaseModel

from assistant0.core.errors import ToolExecutionError
from assistant0.domain.tools import ToolDefinition
from assistant0.services.auth.step_up import current_approval
from assistant0.tools.base import ToolDependencies, send_request


logger = logging.getLogger(__name__)

SHOP_SCOPES = ("openid", "product:buy")


class ShopOnlineInput(BaseModel):
    product: str
    qty: int
    priceLimit: float | None = None


def shop_binding_message(arguments: dict[str, Any]) -> str:
    return f"Do you want to buy {arguments.get('qty')} {arguments.get('product')}"


def _approved_access_token() -> str | None:
    # Credential the user granted when approving this purchase on their device.
    approval = current_approval()
    return approval.access_token if approval is not None else None


def build_shop_online_tool(deps: ToolDependencies) -> ToolDefinition:
    async def execute(arguments: dict[str, Any]) -> str:
        params = ShopOnlineInput.model_validate(arguments)
        logger.info(
            "shop_order_requested product=%s qty=%s price_limit=%s",
            params.product,
            params.qty,
            params.priceLimit,
        )
        api_url = deps.settings.shop_api_url
        if not api_url:
            # No shop API configured; answer with a mock confirmation.
            return f"Ordered {params.qty} {params.product}"

        headers = {"Content-Type": "application/json"}
        access_token = _approved_access_token() or deps.shop_access_token
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"
        response = await send_request(
            deps,
            "POST",
            api_url,
            integration="shop",
            json=params.model_dump(),
            headers=headers,
        )
        if response.status_code >= 500:
            raise ToolExecutionError(f"shop returned {response.status_code}")
        return response.reason_phrase

    return ToolDefinition(
        description="Tool to buy products online",
        input_schema=ShopOnlineInput,
        execute=execute,
        binding_message=shop_binding_message,
        scopes=SHOP_SCOPES,
    )
