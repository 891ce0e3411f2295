"""
=============================================================================
GAMIFICATION.PY — Logros y rankings
=============================================================================
Gestiona:
  - Catálogo de logros (se inserta al arrancar)
  - Estadísticas del usuario (siempre recalculadas desde las tareas)
  - Desbloqueo de logros (exactamente una vez por usuario y logro)
  - Progreso hacia los logros bloqueados
  - Ranking de logros (semana / mes / siempre)

Cada logro mide UNA estadística:
  streak     → racha más larga
  points     → puntos totales (suma de pesos de tareas completadas)
  tasks      → tareas completadas
  challenges → retos terminados
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from clock import Moment, to_naive_utc
from models import Achievement, RequirementType, User, UserAchievement
from store import ChallengeStore
from streaks import completion_map_from_instances, compute_streaks, is_challenge_completed
from tasks import completed_points

logger = logging.getLogger("hardtrack.gamification")


# =============================================================================
# ===================== CATÁLOGO DE LOGROS ====================================
# =============================================================================

ACHIEVEMENTS_DEFINITIONS = [
    # ── Rachas ──
    {"code": "streak_3", "name": "Arranque 🌱", "description": "Completa 3 días seguidos", "icon": "🌱", "category": "streak", "type": "streak", "value": 3, "points": 10},
    {"code": "streak_7", "name": "Semana de fuego 🔥", "description": "Completa 7 días seguidos", "icon": "🔥", "category": "streak", "type": "streak", "value": 7, "points": 25},
    {"code": "streak_14", "name": "Dos semanas imparable 💪", "description": "14 días seguidos sin fallar", "icon": "💪", "category": "streak", "type": "streak", "value": 14, "points": 50},
    {"code": "streak_30", "name": "Mes de acero 🛡️", "description": "30 días seguidos", "icon": "🛡️", "category": "streak", "type": "streak", "value": 30, "points": 100},
    {"code": "streak_75", "name": "75 Hard 💎", "description": "75 días seguidos. Leyenda.", "icon": "💎", "category": "streak", "type": "streak", "value": 75, "points": 300},

    # ── Puntos ──
    {"code": "points_100", "name": "Primeros cien ✨", "description": "Consigue 100 puntos", "icon": "✨", "category": "points", "type": "points", "value": 100, "points": 10},
    {"code": "points_500", "name": "Medio millar ⚡", "description": "Consigue 500 puntos", "icon": "⚡", "category": "points", "type": "points", "value": 500, "points": 25},
    {"code": "points_1000", "name": "Mil puntos 💯", "description": "Consigue 1000 puntos", "icon": "💯", "category": "points", "type": "points", "value": 1000, "points": 50},
    {"code": "points_5000", "name": "Máquina de puntos ⚙️", "description": "Consigue 5000 puntos", "icon": "⚙️", "category": "points", "type": "points", "value": 5000, "points": 150},

    # ── Tareas ──
    {"code": "first_task", "name": "El primer paso 👣", "description": "Completa tu primera tarea", "icon": "👣", "category": "tasks", "type": "tasks", "value": 1, "points": 5},
    {"code": "tasks_50", "name": "Cincuenta tareas 🎯", "description": "Completa 50 tareas", "icon": "🎯", "category": "tasks", "type": "tasks", "value": 50, "points": 25},
    {"code": "tasks_100", "name": "Centenar de tareas 🏅", "description": "Completa 100 tareas", "icon": "🏅", "category": "tasks", "type": "tasks", "value": 100, "points": 50},
    {"code": "tasks_500", "name": "Disciplina de titanio ⚔️", "description": "Completa 500 tareas", "icon": "⚔️", "category": "tasks", "type": "tasks", "value": 500, "points": 150},

    # ── Retos ──
    {"code": "challenge_1", "name": "Reto superado 🏆", "description": "Termina un reto completo", "icon": "🏆", "category": "challenges", "type": "challenges", "value": 1, "points": 100},
    {"code": "challenge_3", "name": "Triple corona 👑", "description": "Termina 3 retos", "icon": "👑", "category": "challenges", "type": "challenges", "value": 3, "points": 250},
]


def seed_achievements(db: Session):
    """
    Inserta los logros en la BD si no existen.
    Se ejecuta al arrancar la aplicación (es idempotente).
    """
    existing_codes = {row[0] for row in db.query(Achievement.code).all()}
    added = 0
    for ach_def in ACHIEVEMENTS_DEFINITIONS:
        if ach_def["code"] in existing_codes:
            continue
        db.add(Achievement(
            code=ach_def["code"],
            name=ach_def["name"],
            description=ach_def["description"],
            icon=ach_def["icon"],
            category=ach_def["category"],
            requirement_type=ach_def["type"],
            requirement_value=ach_def["value"],
            points=ach_def["points"]
        ))
        added += 1
    db.commit()
    logger.info(f"✅ {len(ACHIEVEMENTS_DEFINITIONS)} logros verificados en BD ({added} nuevos)")


# =============================================================================
# ===================== ESTADÍSTICAS DEL USUARIO ==============================
# =============================================================================

@dataclass
class UserStats:
    longest_streak: int = 0
    total_points: int = 0
    total_tasks: int = 0
    completed_challenges: int = 0
    current_streak: int = 0


def compute_user_stats(store: ChallengeStore, user_id: int, now: Moment) -> UserStats:
    """
    Recalcula TODAS las estadísticas desde las tareas de todos los retos
    del usuario (activos y antiguos). Se usa antes de desbloquear logros.

    current_streak → la mayor racha actual entre sus retos activos
    longest_streak → la mayor racha de cualquier reto
    """
    stats = UserStats()

    for challenge in store.get_user_challenges(user_id):
        instances = store.get_task_instances(challenge.id)
        streaks = compute_streaks(completion_map_from_instances(instances))

        stats.longest_streak = max(stats.longest_streak, streaks.longest)
        if challenge.is_active:
            stats.current_streak = max(stats.current_streak, streaks.current)

        stats.total_points += completed_points(store, instances)
        stats.total_tasks += sum(1 for t in instances if t.completed)
        if is_challenge_completed(challenge, instances, now):
            stats.completed_challenges += 1

    return stats


def stat_for(requirement_type: str, stats: UserStats) -> int:
    """Valor de la estadística que mide un tipo de logro"""
    if requirement_type == RequirementType.streak:
        return stats.longest_streak
    if requirement_type == RequirementType.points:
        return stats.total_points
    if requirement_type == RequirementType.tasks:
        return stats.total_tasks
    if requirement_type == RequirementType.challenges:
        return stats.completed_challenges
    logger.warning(f"Tipo de logro desconocido: {requirement_type}")
    return 0


# =============================================================================
# ===================== DESBLOQUEO DE LOGROS ==================================
# =============================================================================

def qualifying_achievements(stats: UserStats, catalog: Iterable[Achievement],
                            already_unlocked_ids: set[int]) -> list[Achievement]:
    """Logros aún bloqueados cuyo umbral ya se alcanza"""
    return [
        a for a in catalog
        if a.id not in already_unlocked_ids
        and stat_for(a.requirement_type, stats) >= a.requirement_value
    ]


def evaluate_unlocks(store: ChallengeStore, user_id: int, stats: UserStats,
                     catalog: Iterable[Achievement], already_unlocked_ids: set[int],
                     now: Optional[datetime] = None) -> list[Achievement]:
    """
    Desbloquea en bloque los logros que ya se cumplen.

    Devuelve SOLO los que esta llamada insertó de verdad: si otra petición
    se adelantó (restricción única), ese logro no se vuelve a anunciar.
    """
    unlocked_at = to_naive_utc(now) if now is not None else None

    newly_unlocked = []
    for achievement in qualifying_achievements(stats, catalog, already_unlocked_ids):
        if store.insert_unlocked_achievement(user_id, achievement.id, unlocked_at):
            newly_unlocked.append(achievement)
            logger.info(f"🏆 Usuario {user_id} desbloqueó: {achievement.name}")

    return newly_unlocked


def check_and_unlock_achievements(store: ChallengeStore, user_id: int, stats: UserStats,
                                  now: Optional[datetime] = None) -> list[Achievement]:
    """Carga catálogo y logros del usuario y evalúa"""
    return evaluate_unlocks(
        store, user_id, stats,
        store.get_achievement_catalog(),
        store.get_unlocked_achievement_ids(user_id),
        now
    )


def achievement_progress(achievement: Achievement, stats: UserStats) -> float:
    """Porcentaje (0-100) hacia un logro"""
    if achievement.requirement_value <= 0:
        return 100.0
    current = max(0, stat_for(achievement.requirement_type, stats))
    return round(min(100.0, 100.0 * current / achievement.requirement_value), 1)


def achievements_overview(store: ChallengeStore, user_id: int, stats: UserStats) -> list[dict]:
    """Catálogo completo con estado y progreso para este usuario"""
    unlocked_map = store.get_unlock_times(user_id)

    result = []
    for ach in store.get_achievement_catalog():
        unlocked = ach.id in unlocked_map
        result.append({
            "id": ach.id,
            "code": ach.code,
            "name": ach.name,
            "description": ach.description,
            "icon": ach.icon,
            "category": ach.category,
            "requirement_type": ach.requirement_type,
            "requirement_value": ach.requirement_value,
            "points": ach.points or 0,
            "current": stat_for(ach.requirement_type, stats),
            "progress": 100.0 if unlocked else achievement_progress(ach, stats),
            "unlocked": unlocked,
            "unlocked_at": unlocked_map.get(ach.id),
        })
    return result


# =============================================================================
# ===================== RANKING DE LOGROS =====================================
# =============================================================================

LEADERBOARD_PERIODS = {
    "weekly": timedelta(days=7),
    "monthly": timedelta(days=30),
    "all_time": None,
}


def achievement_leaderboard(db: Session, period: str, now: datetime, limit: int = 50) -> list[dict]:
    """
    Usuarios ordenados por logros desbloqueados en el periodo
    (y, a igualdad, por puntos de esos logros).
    """
    if period not in LEADERBOARD_PERIODS:
        raise ValueError(f"Periodo no válido: {period}")

    count_col = func.count(UserAchievement.id).label("achievement_count")
    points_col = func.coalesce(func.sum(Achievement.points), 0).label("total_points")

    query = (
        db.query(User.id, User.name, count_col, points_col)
        .join(UserAchievement, UserAchievement.user_id == User.id)
        .join(Achievement, Achievement.id == UserAchievement.achievement_id)
    )

    window = LEADERBOARD_PERIODS[period]
    if window is not None:
        query = query.filter(UserAchievement.unlocked_at >= to_naive_utc(now) - window)

    rows = (
        query.group_by(User.id, User.name)
        .order_by(count_col.desc(), points_col.desc(), User.id)
        .limit(limit)
        .all()
    )

    return [
        {
            "rank": i + 1,
            "user_id": row.id,
            "display_name": row.name,
            "achievement_count": int(row.achievement_count),
            "total_points": int(row.total_points),
        }
        for i, row in enumerate(rows)
    ]
