"""Discovery introspection endpoints (read-only)."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from app.api.deps import enforce_read_only_access, get_controller
from app.schemas.discovery import (
    DiscoveryRecordOut,
    DiscoveryStatsOut,
    SourceListOut,
    SourceStatsOut,
)
from discovery.core.controller import DiscoveryController
from discovery.core.errors import UnknownSourceError


router = APIRouter(dependencies=[Depends(enforce_read_only_access)])


@router.get("/stats", response_model=DiscoveryStatsOut)
def get_stats(controller: DiscoveryController = Depends(get_controller)) -> DiscoveryStatsOut:
    return DiscoveryStatsOut(**controller.get_stats())


@router.get("/sources", response_model=SourceListOut)
def list_sources(controller: DiscoveryController = Depends(get_controller)) -> SourceListOut:
    manager = controller.manager
    stats = [controller.get_source_stats(sid) for sid in manager.source_ids()]
    return SourceListOut(
        total=len(manager.source_ids()),
        healthy=manager.get_healthy_sources(),
        unhealthy=manager.get_unhealthy_sources(),
        sources=[SourceStatsOut(**s) for s in stats if s is not None],
    )


@router.get("/sources/{source_id}", response_model=SourceStatsOut)
def get_source(source_id: str, controller: DiscoveryController = Depends(get_controller)) -> SourceStatsOut:
    stats = controller.get_source_stats(source_id)
    if stats is None:
        raise UnknownSourceError(f"Unknown source: {source_id}")
    return SourceStatsOut(**stats)


@router.get("/records/{mint}", response_model=DiscoveryRecordOut)
def get_record(mint: str, controller: DiscoveryController = Depends(get_controller)) -> DiscoveryRecordOut:
    record = controller.get_record(mint)
    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unknown record.")
    score = controller.scoring.calculate_token_score(record)
    return DiscoveryRecordOut(
        mint=record.mint,
        symbol=record.symbol,
        name=record.name,
        first_source_id=record.first_source_id,
        discovered_at=record.discovered_at,
        status=record.status.value,
        confirmation_count=record.confirmation_count,
        confirmations=[c.model_dump() for c in record.confirmations],
        confirmed_at=record.confirmed_at,
        is_confirmed=controller.aggregator.is_confirmed(record),
        total_weight=score.total_weight,
        credibility_score=score.credibility_score,
        initial_liquidity=record.initial_liquidity,
        initial_market_cap=record.initial_market_cap,
    )
