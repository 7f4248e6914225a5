"""
Automated responder backed by the OpenAI chat completions API.

The assistant answers product and company questions from a fixed catalog
profile. Any API failure surfaces as UpstreamUnavailable; the responder
converts that into the fallback reply.
"""
import json
import logging
from typing import Any, Optional

import openai
from openai import AsyncOpenAI

from chatdesk.config import (
    ASSISTANT_NAME,
    ASSISTANT_TIMEOUT_SECONDS,
    HANDOFF_TRIGGER,
    OPENAI_API_KEY,
    OPENAI_MODEL,
)
from chatdesk.errors import UpstreamUnavailable

logger = logging.getLogger(__name__)


def _tiers(small: float, medium: float) -> dict[str, Any]:
    return {"1-5 Cases": small, "6-50 Cases": medium, "50+ Cases": "Contact office"}


COMPANY_PROFILE: dict[str, Any] = {
    "company": {
        "name": "Eco Packaging Products Inc. (BagStory USA)",
        "headquarters": "New York, USA",
        "productionBase": "China",
        "certification": "ISO 9001:2000",
        "website": "https://bagstoryusa.com",
        "sustainability": {
            "circularEconomy": True,
            "recyclingProgram": True,
            "lowCarbonLogistics": True,
        },
        "coreStrengths": [
            "Self-built vertical production ecosystem with circular economy model",
            "East Coast US distribution and warehouse system",
            "Flexible small-batch order consolidation",
            "Customs clearance and transport management",
        ],
    },
    "products": [
        {"name": "Wine Vest Bag (1/2 Two Bottle)", "size": "19.5H x 8W x 4GW in", "caseQty": 1000,
         "price": _tiers(0.10, 0.09), "use": "Wine & Liquor"},
        {"name": "Small Vest Bag (1/10)", "size": "16H x 8W x 4GW in", "caseQty": 1000,
         "price": _tiers(0.10, 0.09), "use": "Beer, Snacks, Deli"},
        {"name": "Medium Vest Bag (1/8)", "size": "18H x 10W x 5GW in", "caseQty": 1000,
         "price": _tiers(0.11, 0.09), "use": "6-pack, Deli, Liquor store"},
        {"name": "Large Vest Bag (1/6)", "size": "22H x 11.8W x 7GW in", "caseQty": 600,
         "price": _tiers(0.12, 0.10), "use": "Deli & Supermarkets"},
        {"name": "2X-Large Vest Bag (1/4)", "size": "23.5H x 18.7W x 7GW in", "caseQty": 400,
         "price": _tiers(0.20, 0.18), "use": "Supermarket, 99c stores"},
        {"name": "Heavy Duty Large Vest Bag (1/6)", "size": "22H x 11.8W x 7D in", "caseQty": 500,
         "price": _tiers(0.16, 0.135), "use": "Heavy duty, supports 50 lbs"},
        {"name": "Jumbo Grocery Tote Bag", "size": "15H x 14W x 8GW in", "caseQty": 300,
         "price": _tiers(0.25, 0.23), "use": "Retail/Supermarket"},
        {"name": "Thermal Insulated Tote Bag", "size": "15H x 13W x 10D in", "caseQty": 100,
         "price": {"1-5 Cases": 3.5, "6-50 Cases": 3.0}, "use": "Lunch, Delivery, Groceries"},
        {"name": "Mylar Film Gift Bag", "size": "20H x 9.5W in", "caseQty": 500,
         "price": _tiers(0.60, 0.50), "use": "Wine Gift Bag"},
    ],
}


def build_system_prompt(trigger: str = HANDOFF_TRIGGER, name: str = ASSISTANT_NAME) -> str:
    return (
        f"You are {name}, a helpful assistant for {COMPANY_PROFILE['company']['name']}, "
        "an e-commerce packaging company. Use the following company and product "
        "information to answer inquiries accurately:\n\n"
        f"{json.dumps(COMPANY_PROFILE, indent=2)}\n\n"
        "If the question is not covered by this information, answer politely and "
        f"suggest contacting the support team by typing \"{trigger}\"."
    )


class AssistantClient:
    """Thin async wrapper over the chat completions endpoint."""

    def __init__(
        self,
        api_key: str = OPENAI_API_KEY,
        model: str = OPENAI_MODEL,
        timeout: float = ASSISTANT_TIMEOUT_SECONDS,
        trigger: str = HANDOFF_TRIGGER,
        client: Optional[AsyncOpenAI] = None,
    ):
        if client is None and not api_key:
            raise UpstreamUnavailable("assistant", "OPENAI_API_KEY not configured")
        self.model = model
        self.system_prompt = build_system_prompt(trigger)
        self.client = client or AsyncOpenAI(api_key=api_key, timeout=timeout)
        logger.info(f"Assistant client initialized (model={model})")

    async def reply(self, text: str) -> str:
        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": self.system_prompt},
                    {"role": "user", "content": text},
                ],
            )
        except openai.OpenAIError as e:
            logger.error(f"Assistant request failed: {type(e).__name__}: {e}")
            raise UpstreamUnavailable("assistant", str(e)) from e

        content = response.choices[0].message.content if response.choices else None
        if not content or not content.strip():
            raise UpstreamUnavailable("assistant", "empty completion")
        return content.strip()

    async def close(self) -> None:
        await self.client.close()
