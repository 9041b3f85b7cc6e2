"""Platform-side record collection for the CRM sync and reconciliation jobs."""
from collections import defaultdict
from datetime import datetime
from typing import List, Optional

from sqlalchemy import exists, or_, select

from edulure_sync.datetime_utils import isoformat_utc
from edulure_sync.integrations.records import (
    CollectedRecords,
    OutboundRecord,
    build_hash,
    compact,
    map_project_status_to_lead_status,
    stable_json,
    truncate,
)
from edulure_sync.models import db, Community, CommunityMember, CreationProject, User

CONTACT_PAGE_SIZE = 100
LEAD_CANDIDATE_LIMIT = 2000


class PlatformRecordSource:
    """Reads platform tables and shapes them into CRM payloads."""

    def __init__(self, session=None):
        self._session = session

    @property
    def session(self):
        return self._session or db.session

    # -------------------------
    # HubSpot contacts
    # -------------------------
    def hubspot_contacts(self, window_start: Optional[datetime], window_end: Optional[datetime]) -> CollectedRecords:
        """Users with an email whose profile or community membership changed in the window."""
        query = (
            select(User)
            .where(User.email.isnot(None), User.email != "")
            .order_by(User.id.asc())
        )
        if window_start is not None:
            membership_changed = exists().where(
                CommunityMember.user_id == User.id,
                CommunityMember.updated_at >= window_start,
            )
            query = query.where(or_(User.updated_at >= window_start, membership_changed))
        if window_end is not None:
            query = query.where(User.updated_at <= window_end)

        contacts = []
        fetched = 0
        skipped = 0
        offset = 0
        while True:
            users = self.session.execute(query.limit(CONTACT_PAGE_SIZE).offset(offset)).scalars().all()
            if not users:
                break
            memberships = self._memberships_for([user.id for user in users])

            for user in users:
                fetched += 1
                if not user.email:
                    skipped += 1
                    continue
                contacts.append(self._contact_record(user, memberships.get(user.id, [])))

            if len(users) < CONTACT_PAGE_SIZE:
                break
            offset += CONTACT_PAGE_SIZE

        return CollectedRecords(
            records=contacts,
            skipped=skipped,
            summary={
                "fetched": fetched,
                "skipped": skipped,
                "prepared": len(contacts),
                "window_start_at": isoformat_utc(window_start),
                "window_end_at": isoformat_utc(window_end),
            },
        )

    def _memberships_for(self, user_ids):
        rows = self.session.execute(
            select(CommunityMember.user_id, CommunityMember.community_id, CommunityMember.updated_at, Community.name)
            .join(Community, Community.id == CommunityMember.community_id)
            .where(CommunityMember.user_id.in_(user_ids))
        ).all()
        grouped = defaultdict(list)
        for user_id, community_id, updated_at, name in rows:
            grouped[user_id].append((community_id, updated_at, name))
        return grouped

    @staticmethod
    def _contact_record(user, memberships) -> OutboundRecord:
        community_ids = {community_id for community_id, _, _ in memberships}
        names = sorted({name for _, _, name in memberships if name})
        membership_updated = max((updated for _, updated, _ in memberships if updated), default=None)

        signup_iso = isoformat_utc(user.created_at)
        updated_iso = isoformat_utc(user.updated_at)
        membership_iso = isoformat_utc(membership_updated)

        properties = compact({
            "email": user.email,
            "firstname": user.first_name,
            "lastname": user.last_name,
            "edulure_role": user.role or "learner",
            "edulure_signup_date": signup_iso[:10] if signup_iso else None,
            "edulure_last_active": isoformat_utc(user.last_login_at),
            "edulure_last_updated": updated_iso,
            "edulure_membership_last_updated": membership_iso,
            "edulure_community_count": len(community_ids),
            "edulure_communities": ", ".join(names),
        })
        return OutboundRecord(
            entity_type="contact",
            entity_id=user.email,
            payload=properties,
            idempotency_key=build_hash(
                ["hubspot-contact", user.email, updated_iso, membership_iso, stable_json(properties)]
            ),
        )

    def hubspot_identities_since(self, since: datetime) -> List[str]:
        rows = self.session.execute(
            select(User.email)
            .where(User.email.isnot(None), User.email != "", User.updated_at >= since)
            .group_by(User.email)
            .order_by(User.email.asc())
        ).scalars().all()
        return list(rows)

    # -------------------------
    # Salesforce leads
    # -------------------------
    def salesforce_leads(self, window_start: Optional[datetime], window_end: Optional[datetime]) -> CollectedRecords:
        """Creation projects changed in the window, shaped as Salesforce leads for their owner."""
        query = (
            select(CreationProject, User)
            .join(User, User.id == CreationProject.owner_id)
            .where(
                CreationProject.public_id.isnot(None),
                User.email.isnot(None),
                User.email != "",
            )
            .order_by(CreationProject.updated_at.desc())
            .limit(LEAD_CANDIDATE_LIMIT)
        )
        if window_start is not None:
            query = query.where(CreationProject.updated_at >= window_start)
        if window_end is not None:
            query = query.where(CreationProject.updated_at <= window_end)

        rows = self.session.execute(query).all()
        leads = []
        skipped = 0
        for project, owner in rows:
            if not owner.email:
                skipped += 1
                continue
            payload = compact({
                "Company": "Edulure Creator",
                "LastName": owner.last_name or owner.first_name or "Creator",
                "FirstName": owner.first_name,
                "Email": owner.email,
                "Status": map_project_status_to_lead_status(project.status),
                "LeadSource": "Edulure Platform",
                "Title": truncate(project.title, 255) or None,
                "Description": truncate(project.summary, 32000) or None,
                "Edulure_Project_Type__c": project.type,
                "Edulure_Project_Status__c": project.status,
                "Edulure_Project_Updated_At__c": isoformat_utc(project.updated_at),
                "Edulure_Project_Approved_At__c": isoformat_utc(project.approved_at),
                "Edulure_Project_Published_At__c": isoformat_utc(project.published_at),
            })
            leads.append(
                OutboundRecord(
                    entity_type="lead",
                    entity_id=project.public_id,
                    payload=payload,
                    idempotency_key=build_hash(["salesforce-lead", project.public_id, stable_json(payload)]),
                )
            )

        return CollectedRecords(
            records=leads,
            skipped=skipped,
            summary={
                "candidates": len(rows),
                "prepared": len(leads),
                "skipped": skipped,
                "window_start_at": isoformat_utc(window_start),
                "window_end_at": isoformat_utc(window_end),
            },
        )

    def salesforce_identities_since(self, since: datetime) -> List[str]:
        rows = self.session.execute(
            select(CreationProject.public_id)
            .where(CreationProject.public_id.isnot(None), CreationProject.updated_at >= since)
            .order_by(CreationProject.public_id.asc())
        ).scalars().all()
        return list(rows)
