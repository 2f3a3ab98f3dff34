from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tenantguard.domain.models import EvidenceArtifact


async def get_artifact(session: AsyncSession, *, tenant_id: str, artifact_id: str) -> EvidenceArtifact | None:
    result = await session.execute(
        select(EvidenceArtifact).where(
            EvidenceArtifact.id == artifact_id,
            EvidenceArtifact.tenant_id == tenant_id,
        )
    )
    return result.scalar_one_or_none()


async def create_artifact(
    session: AsyncSession,
    *,
    artifact_id: str,
    tenant_id: str,
    path: str,
    sha256: str,
    size_bytes: int,
) -> EvidenceArtifact:
    artifact = EvidenceArtifact(
        id=artifact_id,
        tenant_id=tenant_id,
        path=path,
        sha256=sha256,
        size_bytes=size_bytes,
    )
    session.add(artifact)
    await session.commit()
    await session.refresh(artifact)
    return artifact
