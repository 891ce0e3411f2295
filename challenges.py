"""
=============================================================================
CHALLENGES.PY — Ciclo de vida del reto y detección de final
=============================================================================
Gestiona:
  - Empezar / abandonar / reiniciar un reto (individual o de grupo)
  - La vista de un día (tareas, puntos, progreso)
  - El flujo completo al marcar una tarea
  - Detectar el final del reto y mostrar el resumen UNA sola vez
  - Historial de retos y comparativas (amigos, grupo)

Flujo al marcar una tarea (el orden importa):
  1. Guardar la tarea en BD            → si falla, StoreError y se para aquí
  2. Releer los días completos
  3. Recalcular rachas
  4. Recalcular estadísticas y desbloquear logros
  5. Comprobar si el reto ha terminado
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from clock import Moment, current_day_index, day_date, to_reference_date
from gamification import UserStats, check_and_unlock_achievements, compute_user_stats
from models import Achievement, Challenge, GroupStatus, TaskInstance, User
from store import ChallengeStore, StoreError
from streaks import (
    Streaks, completion_map_from_instances, compute_streaks,
    day_completion_map, is_challenge_completed
)
from tasks import completed_points, describe_tasks, ensure_day, replace_template_set, toggle_task

logger = logging.getLogger("hardtrack.challenges")

DEFAULT_TOTAL_DAYS = 75


class ChallengeConflictError(Exception):
    """La operación choca con el estado del reto (ya hay uno activo, reto cerrado...)"""


@dataclass
class CompletionResult:
    total_days: int
    total_points: int
    longest_streak: int
    total_tasks_completed: int


@dataclass
class ToggleOutcome:
    task: TaskInstance
    challenge: Challenge
    day_complete: bool
    streaks: Streaks
    stats: UserStats
    new_achievements: list[Achievement] = field(default_factory=list)
    completion: Optional[CompletionResult] = None


# =============================================================================
# ===================== EMPEZAR / ABANDONAR / REINICIAR =======================
# =============================================================================

def get_active_challenge(store: ChallengeStore, user_id: int,
                         group_id: Optional[int] = None) -> Optional[Challenge]:
    """El reto activo del usuario en ese ámbito (individual si group_id es None)"""
    for challenge in store.get_user_challenges(user_id, active_only=True):
        if challenge.group_id == group_id:
            return challenge
    return None


def start_challenge(db: Session, user_id: int, now: Moment,
                    total_days: int = DEFAULT_TOTAL_DAYS,
                    group_id: Optional[int] = None,
                    tasks: Optional[list[dict]] = None,
                    use_default_tasks: bool = False,
                    replacing: Optional[Challenge] = None) -> Challenge:
    """
    Crea un reto nuevo empezando HOY y deja listo el día 1.

    Reglas:
      - Máximo un reto individual activo por usuario
      - Máximo un reto activo por grupo y usuario
      - Los retos de grupo duran lo que diga el grupo
      - tasks → sustituye las plantillas propias del usuario antes de empezar
      - use_default_tasks → archiva las plantillas propias (se usan las estándar)
      - replacing → reto que se cierra en la MISMA transacción (reiniciar);
        si el nuevo no se puede crear, el antiguo sigue activo

    Las dos primeras reglas las garantiza la BD (índices únicos parciales);
    la comprobación previa solo da un mensaje claro en el caso normal.
    """
    store = ChallengeStore(db)

    if group_id is not None:
        group = store.get_group(group_id)
        if group is None or group.status != GroupStatus.published.value:
            raise LookupError(f"Grupo {group_id} no encontrado")
        total_days = group.total_days
        if tasks:
            raise ValueError("Las tareas de un reto de grupo las define el grupo")

    if total_days < 1:
        raise ValueError("El reto debe durar al menos un día")

    scope = f"el grupo {group_id}" if group_id is not None else "tu reto individual"
    active = get_active_challenge(store, user_id, group_id)
    if active is not None and (replacing is None or active.id != replacing.id):
        raise ChallengeConflictError(f"Ya tienes un reto activo en {scope}")

    if group_id is None:
        if tasks:
            replace_template_set(db, tasks, user_id)
        elif use_default_tasks:
            replace_template_set(db, [], user_id)

    challenge = Challenge(
        user_id=user_id,
        group_id=group_id,
        start_date=to_reference_date(now),
        total_days=total_days,
        is_active=True,
        completion_shown=False,
    )
    try:
        if replacing is not None and replacing.is_active:
            replacing.is_active = False
            # El UPDATE va antes que el INSERT para no chocar con el índice único
            db.flush()
        db.add(challenge)
        db.commit()
    except IntegrityError as e:
        db.rollback()
        logger.info(f"Usuario {user_id}: otra petición ya abrió un reto en {scope}")
        raise ChallengeConflictError(f"Ya tienes un reto activo en {scope}") from e
    except SQLAlchemyError as e:
        db.rollback()
        raise StoreError("No se pudo crear el reto") from e
    db.refresh(challenge)

    ensure_day(store, challenge, 1)

    if replacing is not None:
        logger.info(f"🔄 Reto {replacing.id} reiniciado como reto {challenge.id}")
    logger.info(f"🔥 Usuario {user_id} empezó el reto {challenge.id} ({total_days} días"
                f"{f', grupo {group_id}' if group_id is not None else ''})")
    return challenge


def abandon_challenge(db: Session, challenge: Challenge) -> Challenge:
    """is_active → False. Terminal para este registro, haya terminado o no."""
    if not challenge.is_active:
        return challenge

    challenge.is_active = False
    try:
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise StoreError("No se pudo cerrar el reto") from e
    db.refresh(challenge)

    logger.info(f"🛑 Reto {challenge.id} abandonado")
    return challenge


def restart_challenge(db: Session, challenge: Challenge, now: Moment) -> Challenge:
    """
    Cierra el reto y empieza otro igual (mismo ámbito y duración) desde el día 1.
    Todo en un commit: si el nuevo falla, el antiguo no se toca.
    """
    return start_challenge(
        db, challenge.user_id, now,
        total_days=challenge.total_days,
        group_id=challenge.group_id,
        replacing=challenge,
    )


# =============================================================================
# ===================== VISTA DE UN DÍA =======================================
# =============================================================================

def load_day(store: ChallengeStore, challenge: Challenge, day_number: int, now: Moment) -> dict:
    """
    Tareas del día (creándolas si hace falta) con puntos y progreso.
    Un reto cerrado ya no crea días: solo se ven los que existían.
    """
    if challenge.is_active:
        instances = ensure_day(store, challenge, day_number)
    else:
        instances = store.get_task_instances(challenge.id, day_number)
    tasks = describe_tasks(store, instances)

    done = [t for t in tasks if t["completed"]]
    return {
        "challenge_id": challenge.id,
        "day_number": day_number,
        "date": day_date(challenge.start_date, day_number),
        "current_day": current_day_index(challenge.start_date, challenge.total_days, now),
        "total_days": challenge.total_days,
        "tasks": tasks,
        "completed_count": len(done),
        "points": sum(t["weight"] for t in done),
        "progress": round(len(done) / len(tasks) * 100, 1) if tasks else 0,
        "day_complete": bool(tasks) and len(done) == len(tasks),
    }


# =============================================================================
# ===================== DETECCIÓN DE FINAL ====================================
# =============================================================================

def challenge_summary(store: ChallengeStore, challenge: Challenge,
                      instances: list[TaskInstance]) -> CompletionResult:
    streaks = compute_streaks(completion_map_from_instances(instances))
    return CompletionResult(
        total_days=challenge.total_days,
        total_points=completed_points(store, instances),
        longest_streak=streaks.longest,
        total_tasks_completed=sum(1 for t in instances if t.completed),
    )


def check_completion(store: ChallengeStore, challenge: Challenge,
                     completion_map: dict[int, bool], now: Moment) -> Optional[CompletionResult]:
    """
    Devuelve el resumen final la PRIMERA vez que se cumple:
      - hoy es el último día (o ya pasó),
      - el último día está completo,
      - y la celebración aún no se mostró.
    Cualquier llamada posterior devuelve None. Un reto abandonado nunca dispara.
    """
    if challenge.completion_shown or not challenge.is_active:
        return None
    if current_day_index(challenge.start_date, challenge.total_days, now) < challenge.total_days:
        return None
    if not completion_map.get(challenge.total_days, False):
        return None

    summary = challenge_summary(store, challenge, store.get_task_instances(challenge.id))

    # Solo quien cierra el cerrojo muestra la celebración
    if not store.set_challenge_completion_shown(challenge.id):
        logger.info(f"Reto {challenge.id}: final ya mostrado por otra petición")
        return None

    logger.info(
        f"🎉 Reto {challenge.id} terminado: {summary.total_points} puntos, "
        f"racha máxima {summary.longest_streak}, {summary.total_tasks_completed} tareas"
    )
    return summary


# =============================================================================
# ===================== MARCAR UNA TAREA (FLUJO COMPLETO) =====================
# =============================================================================

def process_task_toggle(db: Session, user_id: int, task_id: int, completed: bool,
                        now: datetime) -> ToggleOutcome:
    """
    Marca/desmarca una tarea del usuario y recalcula todo lo derivado.

    Lanza:
      LookupError             → la tarea no existe o no es suya
      ChallengeConflictError  → reto abandonado o día que aún no ha llegado
      StoreError              → no se pudo guardar la tarea; no se recalcula nada.
                                Los fallos posteriores (logros, cierre) solo se registran.
    """
    store = ChallengeStore(db)

    task = store.get_task_instance(task_id)
    challenge = store.get_challenge(task.challenge_id) if task else None
    if challenge is None or challenge.user_id != user_id:
        raise LookupError(f"Tarea {task_id} no encontrada")

    if not challenge.is_active:
        raise ChallengeConflictError("Este reto ya no está activo")
    if task.day_number > current_day_index(challenge.start_date, challenge.total_days, now):
        raise ChallengeConflictError("Ese día aún no ha llegado")

    task = toggle_task(store, task_id, completed, now)

    completion_map = day_completion_map(store, challenge.id)
    streaks = compute_streaks(completion_map)

    stats = compute_user_stats(store, user_id, now)

    # La tarea ya está guardada: a partir de aquí un StoreError no se propaga.
    # Logros y cerrojo se vuelven a intentar en el próximo toggle.
    new_achievements = []
    try:
        new_achievements = check_and_unlock_achievements(store, user_id, stats, now)
    except StoreError as e:
        logger.warning(f"⚠️ Tarea {task_id} guardada, pero fallaron los logros: {e}")

    completion = None
    try:
        completion = check_completion(store, challenge, completion_map, now)
    except StoreError as e:
        logger.warning(f"⚠️ Tarea {task_id} guardada, pero falló el cierre del reto: {e}")

    return ToggleOutcome(
        task=task,
        challenge=challenge,
        day_complete=completion_map.get(task.day_number, False),
        streaks=streaks,
        stats=stats,
        new_achievements=new_achievements,
        completion=completion,
    )


# =============================================================================
# ===================== HISTORIAL =============================================
# =============================================================================

def challenge_history(store: ChallengeStore, user_id: int, now: Moment) -> list[dict]:
    """Todos los retos del usuario (más reciente primero) con su resultado"""
    history = []
    for challenge in store.get_user_challenges(user_id):
        instances = store.get_task_instances(challenge.id)
        completed_tasks = sum(1 for t in instances if t.completed)
        streaks = compute_streaks(completion_map_from_instances(instances))

        history.append({
            "id": challenge.id,
            "group_id": challenge.group_id,
            "start_date": challenge.start_date,
            "total_days": challenge.total_days,
            "current_day": current_day_index(challenge.start_date, challenge.total_days, now),
            "is_active": challenge.is_active,
            "is_completed": is_challenge_completed(challenge, instances, now),
            "completion_shown": challenge.completion_shown,
            "completed_tasks": completed_tasks,
            "total_tasks": len(instances),
            "completion_rate": round(completed_tasks / len(instances) * 100, 1) if instances else 0,
            "total_points": completed_points(store, instances),
            "longest_streak": streaks.longest,
        })
    return history


# =============================================================================
# ===================== COMPARATIVAS ==========================================
# =============================================================================

def friend_streaks(db: Session, user_ids: list[int]) -> list[dict]:
    """
    Racha actual y máxima del reto individual activo de cada usuario.
    La lista de amigos la decide quien llama.
    """
    store = ChallengeStore(db)
    users = db.query(User).filter(User.id.in_(user_ids)).all() if user_ids else []

    result = []
    for user in users:
        challenge = get_active_challenge(store, user.id)
        streaks = Streaks(0, 0)
        if challenge is not None:
            streaks = compute_streaks(day_completion_map(store, challenge.id))
        result.append({
            "user_id": user.id,
            "display_name": user.name,
            "current_streak": streaks.current,
            "longest_streak": streaks.longest,
        })

    result.sort(key=lambda r: (-r["current_streak"], -r["longest_streak"], r["user_id"]))
    return result


def group_leaderboard(db: Session, group_id: int, now: Moment) -> list[dict]:
    """Retos activos vinculados al grupo, ordenados por puntos"""
    store = ChallengeStore(db)
    if store.get_group(group_id) is None:
        raise LookupError(f"Grupo {group_id} no encontrado")

    challenges = (
        db.query(Challenge)
        .filter(Challenge.group_id == group_id, Challenge.is_active == True)
        .all()
    )

    entries = []
    for challenge in challenges:
        instances = store.get_task_instances(challenge.id)
        streaks = compute_streaks(completion_map_from_instances(instances))
        entries.append({
            "user_id": challenge.user_id,
            "display_name": challenge.user.name if challenge.user else "",
            "challenge_id": challenge.id,
            "current_day": current_day_index(challenge.start_date, challenge.total_days, now),
            "total_days": challenge.total_days,
            "points": completed_points(store, instances),
            "completed_tasks": sum(1 for t in instances if t.completed),
            "current_streak": streaks.current,
        })

    entries.sort(key=lambda e: (-e["points"], -e["current_streak"], e["user_id"]))
    for i, entry in enumerate(entries):
        entry["rank"] = i + 1
    return entries
