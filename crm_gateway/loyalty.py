"""Loyalty member endpoints backed by the LoyaltyMember__c custom object."""

import logging
from typing import Any, Dict

from .errors import MalformedRequest, ResolutionError
from .record_client import RecordClient, RecordResponse, soql_quote

logger = logging.getLogger(__name__)

MEMBER_FIELDS = "Id, AccountId__c, PointsBalance__c, Tier__c, Program__c, Enrolled__c"


def _positive_points(points: Any) -> int:
    try:
        value = int(points)
    except (TypeError, ValueError):
        raise MalformedRequest("Missing accountId or points")
    if value <= 0:
        raise MalformedRequest("Missing accountId or points")
    return value


class LoyaltyService:
    """Enrollment, balance lookups and point adjustments."""

    def __init__(self, records: RecordClient):
        self.records = records

    async def enroll(self, token: str, account_id: str, program_name: str) -> RecordResponse:
        if not account_id or not program_name:
            raise MalformedRequest("Missing accountId or programName")
        program = (
            await self.records.query(
                token,
                f"SELECT Id FROM LoyaltyProgram__c WHERE Name__c = '{soql_quote(program_name)}' LIMIT 1",
            )
        ).first_record()
        if not program.get("Id"):
            raise ResolutionError("Program not found", status_code=404)
        logger.info(f"Enrolling account {account_id} in {program_name}")
        return await self.records.create(
            token,
            "LoyaltyMember__c",
            {
                "AccountId__c": account_id,
                "PointsBalance__c": 0,
                "Program__c": program["Id"],
                "Enrolled__c": True,
            },
        )

    async def member(self, token: str, account_id: str) -> RecordResponse:
        return await self.records.query(
            token,
            f"SELECT {MEMBER_FIELDS} FROM LoyaltyMember__c "
            f"WHERE AccountId__c = '{soql_quote(account_id)}' LIMIT 1",
        )

    async def balance(self, token: str, account_id: str) -> RecordResponse:
        return await self.records.query(
            token,
            "SELECT PointsBalance__c FROM LoyaltyMember__c "
            f"WHERE AccountId__c = '{soql_quote(account_id)}' LIMIT 1",
        )

    async def _find_member(self, token: str, account_id: str) -> Dict[str, Any]:
        member = (await self._member_balance(token, account_id)).first_record()
        if not member.get("Id"):
            raise ResolutionError("Member not found", status_code=404)
        return member

    async def _member_balance(self, token: str, account_id: str) -> RecordResponse:
        return await self.records.query(
            token,
            "SELECT Id, PointsBalance__c FROM LoyaltyMember__c "
            f"WHERE AccountId__c = '{soql_quote(account_id)}' LIMIT 1",
        )

    async def accrue(self, token: str, account_id: str, points: Any) -> RecordResponse:
        if not account_id:
            raise MalformedRequest("Missing accountId or points")
        points = _positive_points(points)
        member = await self._find_member(token, account_id)
        new_balance = (member.get("PointsBalance__c") or 0) + points
        return await self.records.update(
            token, "LoyaltyMember__c", member["Id"], {"PointsBalance__c": new_balance}
        )

    async def redeem(self, token: str, account_id: str, points: Any) -> RecordResponse:
        if not account_id:
            raise MalformedRequest("Missing accountId or points")
        points = _positive_points(points)
        member = await self._find_member(token, account_id)
        current = member.get("PointsBalance__c") or 0
        if current < points:
            raise MalformedRequest("Insufficient points")
        return await self.records.update(
            token, "LoyaltyMember__c", member["Id"], {"PointsBalance__c": current - points}
        )
