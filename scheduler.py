"""
=============================================================================
SCHEDULER.PY — Cambio de día automático
=============================================================================
Cada noche (00:05 en la zona de referencia) se pregunta "¿qué día es hoy?"
para cada reto activo y se dejan creadas sus tareas del día.

No es imprescindible: si el job no corre, el día se crea igualmente la
primera vez que alguien lo abre (ensure_day es idempotente). El job solo
evita que el usuario vea un día vacío un instante.

Usa APScheduler con CronTrigger.
"""

import logging
from datetime import datetime
from typing import Callable, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from sqlalchemy.orm import Session

from clock import current_day_index, now_utc, reference_timezone
from database import SessionLocal
from models import Challenge
from store import ChallengeStore
from tasks import ensure_day

logger = logging.getLogger("hardtrack.scheduler")

scheduler: Optional[AsyncIOScheduler] = None


# =============================================================================
# ===================== MATERIALIZAR EL DÍA DE HOY ============================
# =============================================================================

def materialize_today(session_factory: Callable[[], Session] = SessionLocal,
                      now: Optional[datetime] = None) -> dict:
    """
    Crea las tareas del día actual de todos los retos activos.

    Un reto que falle se registra y se salta; el resto sigue.
    Devuelve un pequeño resumen: {"challenges", "tasks", "failed"}.
    """
    now = now or now_utc()
    db = session_factory()
    summary = {"challenges": 0, "tasks": 0, "failed": 0}

    try:
        store = ChallengeStore(db)
        challenge_ids = [
            row[0] for row in
            db.query(Challenge.id).filter(Challenge.is_active == True).all()
        ]

        for challenge_id in challenge_ids:
            try:
                challenge = store.get_challenge(challenge_id)
                if challenge is None or not challenge.is_active:
                    continue
                day = current_day_index(challenge.start_date, challenge.total_days, now)
                instances = ensure_day(store, challenge, day)
                summary["challenges"] += 1
                summary["tasks"] += len(instances)
            except Exception as e:
                db.rollback()
                summary["failed"] += 1
                logger.error(f"Error creando el día del reto {challenge_id}: {e}")

    finally:
        db.close()

    logger.info(
        f"📅 Cambio de día: {summary['challenges']} retos al día, "
        f"{summary['tasks']} tareas, {summary['failed']} fallos"
    )
    return summary


# =============================================================================
# ===================== INICIALIZAR SCHEDULER =================================
# =============================================================================

def create_scheduler() -> AsyncIOScheduler:
    """Scheduler con el job diario a las 00:05 (hora de la zona de referencia)"""
    global scheduler

    scheduler = AsyncIOScheduler(timezone=reference_timezone())

    # 00:05 para dar margen al cambio de fecha
    scheduler.add_job(
        materialize_today,
        CronTrigger(hour=0, minute=5, timezone=reference_timezone()),
        id="materialize_today",
        name="Crear las tareas del día",
        replace_existing=True
    )

    logger.info("⏰ Scheduler configurado: cambio de día a las 00:05")
    return scheduler


def start_scheduler():
    """Arranca el scheduler"""
    global scheduler
    if scheduler and not scheduler.running:
        scheduler.start()
        logger.info("⏰ Scheduler arrancado")


def stop_scheduler():
    """Para el scheduler"""
    global scheduler
    if scheduler and scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("⏰ Scheduler parado")
