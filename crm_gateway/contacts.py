"""Demo contact lookup and creation."""

import logging
from typing import Any, Dict, List

from .errors import WriteError
from .models import ContactRequest, DemoContact
from .record_client import RecordClient, soql_quote

logger = logging.getLogger(__name__)

DEMO_CONTACTS_QUERY = (
    "SELECT Id, FirstName, LastName, Email, Demo_Profile__c, Merkury_Id__c FROM Contact "
    "WHERE Demo_Profile__c != null ORDER BY Demo_Profile__c, LastName"
)


class ContactService:
    """Creates Account + Contact pairs without ever duplicating a contact."""

    def __init__(self, records: RecordClient):
        self.records = records

    async def list_demo_contacts(self, token: str) -> List[DemoContact]:
        response = await self.records.query(token, DEMO_CONTACTS_QUERY)
        return [
            DemoContact(
                id=r["Id"],
                first_name=r.get("FirstName"),
                last_name=r.get("LastName"),
                email=r.get("Email"),
                demo_profile=r.get("Demo_Profile__c"),
                merkury_id=r.get("Merkury_Id__c"),
            )
            for r in response.records
        ]

    async def find_or_create(self, token: str, request: ContactRequest) -> Dict[str, Any]:
        """Return the contact for ``request.email``, creating it if needed.

        Returns:
            Dict with ``contactId``, ``accountId`` and ``existing`` (True when
            the contact was already present).

        Raises:
            WriteError: If the Account or Contact create returns no id.
        """
        existing = (
            await self.records.query(
                token,
                "SELECT Id, AccountId FROM Contact "
                f"WHERE Email = '{soql_quote(request.email)}' LIMIT 1",
            )
        ).first_record()
        if existing.get("Id"):
            return {
                "success": True,
                "contactId": existing["Id"],
                "accountId": existing.get("AccountId"),
                "existing": True,
            }

        first_name = request.first_name or request.email.split("@")[0]
        last_name = request.last_name or "Customer"

        account = await self.records.create(token, "Account", {"Name": f"{first_name} {last_name} Household"})
        if not account.record_id:
            raise WriteError("Failed to create Account", details=account.payload())

        fields: Dict[str, Any] = {
            "FirstName": first_name,
            "LastName": last_name,
            "Email": request.email,
            "AccountId": account.record_id,
            "Demo_Profile__c": request.demo_profile or "Created",
            "LeadSource": request.lead_source or "Web",
        }
        if request.merkury_id:
            fields["Merkury_Id__c"] = request.merkury_id
        fields.update(request.beauty_fields)

        contact = await self.records.create(token, "Contact", fields)
        if not contact.record_id:
            raise WriteError("Failed to create Contact", details=contact.payload())

        logger.info(f"Created Account {account.record_id} + Contact {contact.record_id} for {request.email}")
        return {
            "success": True,
            "contactId": contact.record_id,
            "accountId": account.record_id,
            "existing": False,
        }
