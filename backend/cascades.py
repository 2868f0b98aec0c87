# cascades.py — Deleting a scope deletes everything beneath it
#   org -> projects -> branches -> elements, artifacts (+ blobs), webhooks
import logging
from typing import Dict, List

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from artifact_storage import get_strategy
from identifiers import parse_id
from models import Organization, Project, Branch, Element, Artifact, Webhook

logger = logging.getLogger("mbee.cascades")


async def delete_branch_contents(db: AsyncSession, branch_ids: List[str]) -> Dict[str, int]:
    """Remove the elements, artifact records and webhooks of the given branches."""
    if not branch_ids:
        return {"elements": 0, "artifacts": 0, "webhooks": 0}
    elements = await db.execute(delete(Element).where(Element.branch.in_(branch_ids)))
    artifacts = await db.execute(delete(Artifact).where(Artifact.branch.in_(branch_ids)))
    webhooks = await db.execute(delete(Webhook).where(Webhook.reference.in_(branch_ids)))
    return {
        "elements": elements.rowcount or 0,
        "artifacts": artifacts.rowcount or 0,
        "webhooks": webhooks.rowcount or 0,
    }


async def _clear_blobs(db: AsyncSession, project_ids: List[str]) -> None:
    result = await db.execute(
        select(Artifact.strategy).where(Artifact.project.in_(project_ids)).distinct()
    )
    strategies = set(result.scalars().all()) | {get_strategy().name}
    for project_id in project_ids:
        org_id, leaf = parse_id(project_id)[:2]
        for name in strategies:
            await get_strategy(name).clear(org_id, leaf)


async def delete_projects(db: AsyncSession, project_ids: List[str]) -> None:
    """Remove projects with their branches, elements, artifacts, blobs and webhooks."""
    if not project_ids:
        return
    await _clear_blobs(db, project_ids)

    result = await db.execute(select(Branch.id).where(Branch.project.in_(project_ids)))
    branch_ids = list(result.scalars().all())
    counts = await delete_branch_contents(db, branch_ids)

    await db.execute(delete(Branch).where(Branch.project.in_(project_ids)))
    await db.execute(delete(Webhook).where(Webhook.reference.in_(project_ids)))
    await db.execute(delete(Project).where(Project.id.in_(project_ids)))
    logger.info(
        "Deleted %d project(s), %d branch(es), %d element(s), %d artifact(s)",
        len(project_ids), len(branch_ids), counts["elements"], counts["artifacts"],
    )


async def delete_orgs(db: AsyncSession, org_ids: List[str]) -> None:
    result = await db.execute(select(Project.id).where(Project.org.in_(org_ids)))
    await delete_projects(db, list(result.scalars().all()))
    await db.execute(delete(Webhook).where(Webhook.reference.in_(org_ids)))
    await db.execute(delete(Organization).where(Organization.id.in_(org_ids)))
