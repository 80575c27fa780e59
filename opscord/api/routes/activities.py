from fastapi import APIRouter, Depends, HTTPException, Query, status

from opscord.schemas.activities import (
    IngestAccepted,
    IngestEventInput,
    LinkOut,
    LinksOut,
    RelatedActivityOut,
    RelatedContextOut,
    RelatedContextRequest,
)
from opscord.services.correlation import get_correlation_engine
from opscord.services.ingest import get_ingestion_gateway
from opscord.services.repository import (
    RepositoryConflictError,
    RepositoryUnavailableError,
    RepositoryValidationError,
)

router = APIRouter()


@router.post("", response_model=IngestAccepted)
async def ingest_activity(
    payload: IngestEventInput,
    gateway=Depends(get_ingestion_gateway),
) -> IngestAccepted:
    try:
        result = await gateway.ingest(payload)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except RepositoryConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return IngestAccepted(activity_id=result.activity_id, skipped=result.skipped)


@router.get("/links", response_model=LinksOut)
async def get_activity_links(
    id: str | None = Query(default=None),
    correlation=Depends(get_correlation_engine),
) -> LinksOut:
    if not id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing id param")
    try:
        links = await correlation.get_links(id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return LinksOut(
        links=[
            LinkOut(
                id=link.id,
                title=link.title,
                source=link.source,
                type=link.type,
                url=link.url,
                relationship=link.relationship,
                link_type=link.link_type,
                link_subtype=link.link_subtype,
                similarity=link.similarity,
            )
            for link in links
        ]
    )


@router.post("/related", response_model=RelatedContextOut)
async def find_related_context(
    payload: RelatedContextRequest,
    organization_id: str | None = Query(default=None),
    correlation=Depends(get_correlation_engine),
) -> RelatedContextOut:
    if not organization_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing organization_id param")
    try:
        matches = await correlation.find_related(
            payload.text,
            threshold=payload.threshold,
            limit=payload.limit,
            organization_id=organization_id,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return RelatedContextOut(
        results=[
            RelatedActivityOut(
                id=match.id,
                title=match.title,
                description=match.description,
                source=match.source,
                activity_type=match.activity_type,
                similarity=match.similarity,
            )
            for match in matches
        ]
    )
