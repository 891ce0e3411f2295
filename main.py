"""
=============================================================================
MAIN.PY — La API de HardTrack
=============================================================================
Este archivo define TODOS los endpoints de la API REST.

Organización por secciones:
  1. CHALLENGES   → Empezar, ver, abandonar y reiniciar retos
  2. DAYS         → Tareas del día (hoy o días pasados)
  3. TASKS        → Marcar/desmarcar tareas (rachas, logros y final del reto)
  4. TEMPLATES    → Conjuntos de tareas del usuario o de un grupo
  5. ACHIEVEMENTS → Catálogo con progreso y ranking
  6. SOCIAL       → Rachas de amigos y ranking de grupo

El registro/login vive fuera: aquí solo se verifica el token (auth.py).
"""

import os
import logging
import traceback
from dataclasses import asdict
from datetime import datetime
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Depends, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from database import get_db, init_db, SessionLocal
from models import Challenge, User
from schemas import (
    AchievementLeaderboardEntry, AchievementProgressResponse, AchievementResponse,
    ChallengeCreate, ChallengeHistoryEntry, ChallengeResponse, DayResponse,
    FriendStreakEntry, GroupLeaderboardEntry, StreakResponse, TaskTemplateResponse,
    TaskToggle, TemplateSetUpdate, ToggleResponse
)
from auth import get_current_user
from clock import current_day_index, now_utc
from store import ChallengeStore, StoreError
from streaks import challenge_streaks
from tasks import describe_tasks, replace_template_set
from gamification import (
    seed_achievements, compute_user_stats, achievements_overview, achievement_leaderboard
)
from challenges import (
    ChallengeConflictError, abandon_challenge, challenge_history, friend_streaks,
    get_active_challenge, group_leaderboard, load_day, process_task_toggle,
    restart_challenge, start_challenge
)

# ─────────────────────────────────────────────────────────────────────────────
# LOGGING
# ─────────────────────────────────────────────────────────────────────────────

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s"
)
logger = logging.getLogger("hardtrack.api")

SCHEDULER_ENABLED = os.getenv("SCHEDULER_ENABLED", "true").lower() in ("1", "true", "yes")
ALLOWED_ORIGINS = [o.strip() for o in os.getenv("ALLOWED_ORIGINS", "*").split(",") if o.strip()]


# ─────────────────────────────────────────────────────────────────────────────
# LIFESPAN (Arranque y apagado)
# ─────────────────────────────────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Arranque:
      1. Crear tablas si no existen
      2. Insertar el catálogo de logros
      3. Arrancar el cambio de día automático (si SCHEDULER_ENABLED)
    """
    logger.info("🚀 Arrancando HardTrack...")

    init_db()
    logger.info("✅ Base de datos inicializada")

    db = SessionLocal()
    try:
        seed_achievements(db)
    finally:
        db.close()

    if SCHEDULER_ENABLED:
        from scheduler import create_scheduler, start_scheduler
        create_scheduler()
        start_scheduler()
    else:
        logger.warning("⚠️ Scheduler desactivado (SCHEDULER_ENABLED=false)")

    logger.info("🎉 HardTrack operativo")

    yield  # ← La aplicación está corriendo

    logger.info("🛑 Apagando HardTrack...")
    if SCHEDULER_ENABLED:
        from scheduler import stop_scheduler
        stop_scheduler()
    logger.info("👋 Apagado completo")


# ─────────────────────────────────────────────────────────────────────────────
# APLICACIÓN FASTAPI
# ─────────────────────────────────────────────────────────────────────────────

app = FastAPI(
    title="HardTrack API",
    description="Motor de progreso de retos tipo 75 Hard: días, rachas, logros y final del reto",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ─────────────────────────────────────────────────────────────────────────────
# ERROR HANDLERS
# ─────────────────────────────────────────────────────────────────────────────

@app.exception_handler(StoreError)
async def store_error_handler(request: Request, exc: StoreError):
    """La BD falló: nada se recalculó, el cliente puede reintentar"""
    logger.warning(f"⚠️ Error de almacenamiento en {request.url}: {exc}")
    return JSONResponse(
        status_code=503,
        content={"detail": f"No se pudo guardar: {exc}", "retryable": True}
    )


@app.exception_handler(ChallengeConflictError)
async def conflict_error_handler(request: Request, exc: ChallengeConflictError):
    logger.info(f"Conflicto en {request.url}: {exc}")
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Captura errores no manejados y devuelve detalles útiles"""
    error_msg = str(exc)
    error_trace = traceback.format_exc()
    logger.error(f"❌ Error no manejado en {request.url}: {error_msg}\n{error_trace}")
    return JSONResponse(
        status_code=500,
        content={
            "detail": error_msg,
            "type": type(exc).__name__,
            "path": str(request.url)
        }
    )


# ─────────────────────────────────────────────────────────────────────────────
# HELPERS
# ─────────────────────────────────────────────────────────────────────────────

def _own_challenge(db: Session, challenge_id: int, user: User) -> Challenge:
    """El reto si existe y es del usuario; si no, 404 (no se revela si existe)"""
    challenge = ChallengeStore(db).get_challenge(challenge_id)
    if challenge is None or challenge.user_id != user.id:
        raise HTTPException(status_code=404, detail="Reto no encontrado")
    return challenge


def _challenge_out(challenge: Challenge, now: datetime) -> dict:
    return {
        "id": challenge.id,
        "user_id": challenge.user_id,
        "group_id": challenge.group_id,
        "start_date": challenge.start_date,
        "total_days": challenge.total_days,
        "current_day": current_day_index(challenge.start_date, challenge.total_days, now),
        "is_active": challenge.is_active,
        "completion_shown": challenge.completion_shown,
    }


# =============================================================================
# ===================== HEALTH CHECK ==========================================
# =============================================================================

@app.get("/", tags=["Health"])
def health_check():
    """Verifica que la API está viva"""
    return {
        "status": "ok",
        "app": "HardTrack",
        "version": "1.0.0",
        "timestamp": datetime.utcnow().isoformat()
    }


# =============================================================================
# ===================== SECCIÓN 1: CHALLENGES =================================
# =============================================================================

@app.post("/challenges", response_model=ChallengeResponse, status_code=201, tags=["Challenges"])
def create_challenge(data: ChallengeCreate, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    """
    Empieza un reto HOY. Individual por defecto; con group_id, de grupo.
    Ya hay uno activo en ese ámbito → 409.
    """
    now = now_utc()
    tasks = [t.model_dump() for t in data.tasks] if data.tasks else None
    try:
        challenge = start_challenge(
            db, user.id, now,
            total_days=data.total_days,
            group_id=data.group_id,
            tasks=tasks,
            use_default_tasks=data.use_default_tasks,
        )
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _challenge_out(challenge, now)


@app.get("/challenges/active", response_model=Optional[ChallengeResponse], tags=["Challenges"])
def get_active(
    group_id: Optional[int] = None,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Reto activo (individual, o del grupo indicado). null si no hay."""
    challenge = get_active_challenge(ChallengeStore(db), user.id, group_id)
    if challenge is None:
        return None
    return _challenge_out(challenge, now_utc())


@app.get("/challenges/history", response_model=list[ChallengeHistoryEntry], tags=["Challenges"])
def get_history(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    """Todos los retos del usuario, el más reciente primero"""
    return challenge_history(ChallengeStore(db), user.id, now_utc())


@app.post("/challenges/{challenge_id}/abandon", response_model=ChallengeResponse, tags=["Challenges"])
def abandon(challenge_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    challenge = _own_challenge(db, challenge_id, user)
    return _challenge_out(abandon_challenge(db, challenge), now_utc())


@app.post("/challenges/{challenge_id}/restart", response_model=ChallengeResponse, status_code=201, tags=["Challenges"])
def restart(challenge_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    """Cierra este reto y empieza uno igual desde el día 1"""
    challenge = _own_challenge(db, challenge_id, user)
    now = now_utc()
    try:
        new_challenge = restart_challenge(db, challenge, now)
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return _challenge_out(new_challenge, now)


@app.get("/challenges/{challenge_id}/streaks", response_model=StreakResponse, tags=["Challenges"])
def get_streaks(challenge_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    challenge = _own_challenge(db, challenge_id, user)
    return challenge_streaks(ChallengeStore(db), challenge.id)._asdict()


# =============================================================================
# ===================== SECCIÓN 2: DAYS =======================================
# =============================================================================

@app.get("/challenges/{challenge_id}/today", response_model=DayResponse, tags=["Days"])
def get_today(challenge_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    """Tareas del día actual (se crean la primera vez que se abren)"""
    challenge = _own_challenge(db, challenge_id, user)
    now = now_utc()
    day = current_day_index(challenge.start_date, challenge.total_days, now)
    return load_day(ChallengeStore(db), challenge, day, now)


@app.get("/challenges/{challenge_id}/days/{day_number}", response_model=DayResponse, tags=["Days"])
def get_day(challenge_id: int, day_number: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    """Un día concreto, hasta el día actual. Los días futuros no se pueden abrir."""
    challenge = _own_challenge(db, challenge_id, user)
    now = now_utc()
    current_day = current_day_index(challenge.start_date, challenge.total_days, now)
    if not 1 <= day_number <= current_day:
        raise HTTPException(
            status_code=400,
            detail=f"Día {day_number} no disponible (día actual: {current_day})"
        )
    return load_day(ChallengeStore(db), challenge, day_number, now)


# =============================================================================
# ===================== SECCIÓN 3: TASKS ======================================
# =============================================================================

@app.patch("/tasks/{task_id}", response_model=ToggleResponse, tags=["Tasks"])
def toggle(task_id: int, data: TaskToggle, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    """
    Marca/desmarca una tarea. La respuesta trae todo lo recalculado:
    rachas, logros NUEVOS y, solo la primera vez, el resumen final del reto.
    """
    try:
        outcome = process_task_toggle(db, user.id, task_id, data.completed, now_utc())
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))

    store = ChallengeStore(db)
    return {
        "task": describe_tasks(store, [outcome.task])[0],
        "day_complete": outcome.day_complete,
        "streaks": outcome.streaks._asdict(),
        "stats": asdict(outcome.stats),
        "new_achievements": [AchievementResponse.model_validate(a) for a in outcome.new_achievements],
        "completion": asdict(outcome.completion) if outcome.completion else None,
    }


# =============================================================================
# ===================== SECCIÓN 4: TEMPLATES ==================================
# =============================================================================

@app.put("/templates", response_model=list[TaskTemplateResponse], tags=["Templates"])
def put_templates(data: TemplateSetUpdate, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    """Nuevo conjunto de tareas para los días que aún no existen"""
    return replace_template_set(db, [t.model_dump() for t in data.tasks], user.id)


@app.put("/groups/{group_id}/templates", response_model=list[TaskTemplateResponse], tags=["Templates"])
def put_group_templates(group_id: int, data: TemplateSetUpdate,
                        user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    """Solo quien creó el grupo puede cambiar sus tareas"""
    group = ChallengeStore(db).get_group(group_id)
    if group is None:
        raise HTTPException(status_code=404, detail="Grupo no encontrado")
    if group.created_by != user.id:
        raise HTTPException(status_code=403, detail="Solo el creador del grupo puede cambiar sus tareas")
    return replace_template_set(db, [t.model_dump() for t in data.tasks], user.id, group_id=group_id)


# =============================================================================
# ===================== SECCIÓN 5: ACHIEVEMENTS ===============================
# =============================================================================

@app.get("/achievements", response_model=list[AchievementProgressResponse], tags=["Achievements"])
def get_achievements(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    """Todos los logros con su progreso (desbloqueados al 100%)"""
    store = ChallengeStore(db)
    stats = compute_user_stats(store, user.id, now_utc())
    return achievements_overview(store, user.id, stats)


@app.get("/achievements/leaderboard", response_model=list[AchievementLeaderboardEntry], tags=["Achievements"])
def get_achievement_leaderboard(
    period: str = Query("all_time", description="weekly | monthly | all_time"),
    limit: int = Query(50, ge=1, le=200),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    try:
        return achievement_leaderboard(db, period, now_utc(), limit=limit)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


# =============================================================================
# ===================== SECCIÓN 6: SOCIAL =====================================
# =============================================================================

@app.get("/streaks/friends", response_model=list[FriendStreakEntry], tags=["Social"])
def get_friend_streaks(
    user_ids: list[int] = Query(default=[]),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """
    Rachas del usuario y de los ids indicados (?user_ids=2&user_ids=3).
    Quién es amigo de quién lo decide el servicio social.
    """
    ids = list(dict.fromkeys([user.id] + user_ids))
    return friend_streaks(db, ids)


@app.get("/groups/{group_id}/leaderboard", response_model=list[GroupLeaderboardEntry], tags=["Social"])
def get_group_leaderboard(group_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    try:
        return group_leaderboard(db, group_id, now_utc())
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
