"""
ProductGuard Enforcement Core - FastAPI Application

Main entry point for the enforcement core backend.

Architecture:
- DetectionSignal -> PriorityScorer -> Infringement (pending_verification)
- Reviewer action -> InfringementStateMachine -> audit row + outbox jobs
- Outbox -> EvidencePipeline / FeedbackRecorder / CRM events
- EnforcementAction -> DeadlineEngine -> escalation chain
"""
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .routers import auth_router, infringements_router, enforcement_router, scheduler_router
from .database import init_db


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize database on startup."""
    init_db()
    yield

# Create FastAPI app
app = FastAPI(
    lifespan=lifespan,
    title="ProductGuard Enforcement Core",
    description="""
    ProductGuard Enforcement Core - Infringement Lifecycle

    Takes detected copies of a protected digital product through review,
    evidence capture and escalating takedown enforcement.

    ## Pipeline
    1. **Scoring**: DetectionSignal -> severity score + P0/P1/P2 priority
    2. **Review**: verify / reject / whitelist with an append-only audit trail
    3. **Evidence**: canonical SHA-256 snapshot, timestamp proof, attestation
    4. **Enforcement**: notices with response deadlines and an escalation chain
    5. **Feedback**: review outcomes become confidence-weighted patterns

    ## Key Principles
    - Status changes only through the state machine
    - Evidence snapshots are immutable once written
    - Post-transition work runs from a durable outbox
    """,
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(auth_router)
app.include_router(infringements_router)
app.include_router(enforcement_router)
app.include_router(scheduler_router)


@app.get("/")
async def root():
    """Root endpoint - API information."""
    return {
        "name": "ProductGuard Enforcement Core",
        "version": "1.0.0",
        "description": "Infringement lifecycle, evidence and enforcement",
        "docs": "/docs",
    }


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "version": "1.0.0"}


# For running with: python -m productguard.main
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8001)
