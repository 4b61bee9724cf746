"""Generation-time segment endpoints: lookup and save."""

from fastapi import APIRouter, Depends, HTTPException, status

from meditation_cache_service.cache.lookup import SegmentLookup
from meditation_cache_service.cache.writer import CacheWriter
from meditation_cache_service.config import settings
from meditation_cache_service.dependencies import get_cache_writer, get_segment_lookup
from meditation_cache_service.exceptions import CacheError
from meditation_cache_service.schemas.segment import (
    LookupRequest,
    LookupResponse,
    SaveSegmentRequest,
    SegmentResponse,
    SimilarCandidate,
)

router = APIRouter(prefix=f"{settings.api_v1_prefix}/segments", tags=["segments"])


@router.post("/lookup", response_model=LookupResponse)
async def lookup_segment(
    request: LookupRequest,
    lookup: SegmentLookup = Depends(get_segment_lookup),
) -> LookupResponse:
    """Find reusable audio for one segment.

    Always answers 200: store or provider failures come back as a miss
    with degraded=true so the caller synthesizes fresh audio.
    """
    result = await lookup.lookup(
        request.text,
        request.voice_id,
        request.voice_style,
        request.language,
        use_semantic=request.use_semantic,
        threshold=request.threshold,
    )
    return LookupResponse(
        outcome=result.outcome.value,
        source=result.source.value,
        degraded=result.degraded,
        similarity=result.similarity,
        segment=SegmentResponse.model_validate(result.segment) if result.segment else None,
        candidates=[
            SimilarCandidate(
                segment=SegmentResponse.model_validate(match.segment),
                similarity=match.similarity,
            )
            for match in result.candidates
        ],
    )


@router.post("", response_model=SegmentResponse, status_code=status.HTTP_201_CREATED)
async def save_segment(
    request: SaveSegmentRequest,
    writer: CacheWriter = Depends(get_cache_writer),
) -> SegmentResponse:
    """Persist a freshly synthesized segment.

    Returns the authoritative row; if the same text, voice and style was
    saved concurrently, that existing row is returned.
    """
    try:
        segment = await writer.save(
            request.text,
            request.voice_id,
            request.voice_gender,
            request.voice_style,
            request.audio_url,
            audio_duration=request.audio_duration,
            file_size=request.file_size,
            language=request.language,
        )
    except CacheError as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=str(e),
        ) from e
    return SegmentResponse.model_validate(segment)
