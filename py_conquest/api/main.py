"""FastAPI backend shared by all players."""

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field
from typing import Dict, List, Optional
import structlog

from ..config import settings
from ..core.conflicts import ColorPalette, TerritoryConflictDetector
from ..core.models import ChainRecord, NodeRecord, PlayerChainRecord, PlayerNodeRecord, ProfileRecord
from ..db.backend import DatabaseBackend
from ..db.connection import Database
from ..utils.logging import configure_logging

configure_logging("DEBUG" if settings.debug else settings.log_level, settings.log_format)

logger = structlog.get_logger()

db = Database(settings.database_url)
backend = DatabaseBackend(db)
palette = ColorPalette()

app = FastAPI(
    title="Conquest API",
    description="Shared multiplayer store for the territory conquest game",
    version="0.1.0"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Request/Response models
class ProfileUpdate(BaseModel):
    username: Optional[str] = Field(None, max_length=100)
    display_name: Optional[str] = Field(None, max_length=255)
    avatar_url: Optional[str] = Field(None, max_length=500)


class TerritoryStatsUpdate(BaseModel):
    territory_area_km2: float = Field(..., ge=0)


class UploadResponse(BaseModel):
    user_id: str
    received: int
    inserted: int


class TerritoryResponse(BaseModel):
    """Another player's territory as seen by the requesting player."""

    user_id: str
    name: str
    color: str
    node_count: int
    chain_count: int
    area_m2: float = 0.0
    ring: Optional[List[List[float]]] = None
    bounds: Optional[List[float]] = None


# Event handlers
@app.on_event("startup")
async def startup_event():
    """Initialize database on startup."""
    logger.info("Starting Conquest API")
    db.initialize()
    logger.info("API startup complete")


@app.on_event("shutdown")
async def shutdown_event():
    logger.info("Shutting down Conquest API")
    db.dispose()


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    try:
        db.ping()
        return {"status": "healthy", "database": "connected"}
    except Exception as e:
        logger.error("Health check failed", error=str(e))
        raise HTTPException(status_code=503, detail="Service unhealthy")


@app.get("/profiles", response_model=List[ProfileRecord])
async def list_profiles():
    return await backend.fetch_profiles()


@app.put("/profiles/{user_id}", response_model=ProfileRecord)
async def update_profile(user_id: str, update: ProfileUpdate):
    profile = ProfileRecord(user_id=user_id, **update.model_dump())
    return await backend.upsert_profile(profile)


@app.put("/players/{user_id}/territory")
async def update_territory_stats(user_id: str, update: TerritoryStatsUpdate):
    await backend.update_territory_stats(user_id, update.territory_area_km2)
    return {"user_id": user_id, "territory_area_km2": update.territory_area_km2}


@app.get("/nodes", response_model=List[PlayerNodeRecord])
async def list_nodes(exclude: Optional[str] = Query(None, description="User id to leave out")):
    return await backend.fetch_nodes(exclude_user=exclude)


@app.get("/chains", response_model=List[PlayerChainRecord])
async def list_chains(exclude: Optional[str] = Query(None, description="User id to leave out")):
    return await backend.fetch_chains(exclude_user=exclude)


@app.post("/players/{user_id}/nodes", response_model=UploadResponse)
async def upload_nodes(user_id: str, records: List[NodeRecord]):
    """Upload nodes; ids already stored are skipped."""
    inserted = await backend.insert_nodes(user_id, records)
    return UploadResponse(user_id=user_id, received=len(records), inserted=inserted)


@app.post("/players/{user_id}/chains", response_model=UploadResponse)
async def upload_chains(user_id: str, records: List[ChainRecord]):
    """Upload chains; paths are reduced to their endpoints before storage."""
    inserted = await backend.insert_chains(user_id, records)
    return UploadResponse(user_id=user_id, received=len(records), inserted=inserted)


@app.delete("/players/{user_id}")
async def delete_player(user_id: str) -> Dict[str, int]:
    deleted = await backend.delete_player_data(user_id)
    if not deleted["nodes"] and not deleted["chains"]:
        raise HTTPException(status_code=404, detail="Player has no data")
    return deleted


@app.get("/territories", response_model=List[TerritoryResponse])
async def list_territories(exclude: Optional[str] = Query(None, description="Requesting user id")):
    detector = TerritoryConflictDetector(
        backend, exclude or "", palette=palette,
        simplify_tolerance=settings.territory_simplify_tolerance,
    )
    players = await detector.fetch_all()
    return [
        TerritoryResponse(
            user_id=p.user_id,
            name=p.name,
            color=p.color,
            node_count=len(p.nodes),
            chain_count=len(p.chains),
            area_m2=p.territory.area_m2 if p.territory else 0.0,
            ring=[list(c) for c in p.territory.ring] if p.territory else None,
            bounds=list(p.territory.bounds) if p.territory else None,
        )
        for p in players.values()
    ]


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        app,
        host=settings.api_host,
        port=settings.api_port,
        log_level="debug" if settings.debug else "info",
    )
