"""
=============================================================================
STREAKS.PY — Días completos y rachas
=============================================================================
Un día está COMPLETO si tiene al menos una tarea y TODAS están hechas.
Un día sin tareas creadas no aparece en el mapa y cuenta como roto.

Las rachas se recalculan SIEMPRE desde las tareas (O(días)); no hay
columnas de racha guardadas en las que confiar.
"""

from typing import Iterable, NamedTuple

from clock import Moment, current_day_index
from models import Challenge, TaskInstance
from store import ChallengeStore


class Streaks(NamedTuple):
    current: int
    longest: int


def completion_map_from_instances(instances: Iterable[TaskInstance]) -> dict[int, bool]:
    """Agrupa por día: {day_number: todas_completadas}"""
    days: dict[int, bool] = {}
    for task in instances:
        days[task.day_number] = days.get(task.day_number, True) and bool(task.completed)
    return days


def day_completion_map(store: ChallengeStore, challenge_id: int) -> dict[int, bool]:
    return completion_map_from_instances(store.get_task_instances(challenge_id))


def compute_streaks(completion_map: dict[int, bool]) -> Streaks:
    """
    Racha actual: desde el día más alto presente hacia atrás, días completos
    seguidos hasta el primer día incompleto o ausente.

    Racha más larga: recorrido ascendente; un día incompleto o ausente
    reinicia el contador. Incluye la racha actual, así que longest >= current.

      {1: T, 2: T, 3: F, 4: T}  → Streaks(current=1, longest=2)
      {}                        → Streaks(0, 0)
    """
    if not completion_map:
        return Streaks(0, 0)

    last_day = max(completion_map)

    current = 0
    for day in range(last_day, 0, -1):
        if not completion_map.get(day, False):
            break
        current += 1

    longest = 0
    run = 0
    for day in range(1, last_day + 1):
        if completion_map.get(day, False):
            run += 1
            longest = max(longest, run)
        else:
            run = 0

    return Streaks(current, longest)


def challenge_streaks(store: ChallengeStore, challenge_id: int) -> Streaks:
    return compute_streaks(day_completion_map(store, challenge_id))


def is_challenge_completed(challenge: Challenge, instances: list[TaskInstance], now: Moment) -> bool:
    """
    Un reto cuenta como TERMINADO si ya se mostró su celebración final,
    o si se llegó a su último día y ese día está completo (la misma
    condición que dispara la celebración).
    """
    if challenge.completion_shown:
        return True
    if current_day_index(challenge.start_date, challenge.total_days, now) < challenge.total_days:
        return False
    return completion_map_from_instances(instances).get(challenge.total_days, False)
