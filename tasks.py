"""
=============================================================================
TASKS.PY — Tareas de cada día del reto
=============================================================================
Gestiona:
  - Crear (una sola vez) las tareas de un día a partir de las plantillas
  - Marcar/desmarcar tareas
  - Sustituir el conjunto de plantillas de un usuario o de un grupo

Orden para elegir plantillas de un día nuevo:
  reto de grupo  → plantillas del grupo   → si no hay, las de por defecto
  reto individual → plantillas del usuario → si no hay, las de por defecto

Una vez creado un día, su conjunto de tareas queda congelado: cambiar
las plantillas después solo afecta a los días que aún no existen.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from clock import to_naive_utc
from models import Challenge, TaskInstance, TaskTemplate, TemplateScope
from store import ChallengeStore, StoreError

logger = logging.getLogger("hardtrack.tasks")

UNKNOWN_TASK_NAME = "Tarea desconocida"


class DayOutOfRangeError(Exception):
    """
    Se pidió un día fuera de [1, total_days]. El reloj ya recorta el día,
    así que esto es un bug del llamador, no un estado recuperable.
    """


# =============================================================================
# ===================== PLANTILLAS ============================================
# =============================================================================

def resolve_templates(store: ChallengeStore, challenge: Challenge) -> list[TaskTemplate]:
    """Plantillas que se usarían HOY para crear un día nuevo de este reto"""
    if challenge.group_id is not None:
        templates = store.get_task_templates(TemplateScope.group, challenge.group_id)
    else:
        templates = store.get_task_templates(TemplateScope.user, challenge.user_id)

    if templates:
        return templates
    return store.get_task_templates(TemplateScope.global_default)


def replace_template_set(db: Session, tasks: list[dict], user_id: int,
                         group_id: Optional[int] = None) -> list[TaskTemplate]:
    """
    Sustituye las plantillas del usuario (o del grupo si hay group_id).

    Las plantillas no se editan nunca: las vigentes se archivan y se crean
    nuevas. Los días ya creados siguen apuntando a las antiguas.

    tasks → [{"name": ..., "description": ..., "weight": ...}, ...]
    """
    current = db.query(TaskTemplate).filter(TaskTemplate.archived == False)
    if group_id is not None:
        current = current.filter(TaskTemplate.group_id == group_id)
    else:
        current = current.filter(
            TaskTemplate.created_by == user_id,
            TaskTemplate.group_id == None,
            TaskTemplate.is_default == False
        )

    archived = 0
    for template in current.all():
        template.archived = True
        archived += 1

    new_templates = [
        TaskTemplate(
            name=t["name"].strip(),
            description=t.get("description") or None,
            weight=t.get("weight") or 1,
            created_by=user_id,
            group_id=group_id,
            is_default=False,
        )
        for t in tasks
    ]
    db.add_all(new_templates)

    try:
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise StoreError("No se pudieron guardar las tareas") from e

    for template in new_templates:
        db.refresh(template)

    owner = f"grupo {group_id}" if group_id is not None else f"usuario {user_id}"
    logger.info(f"📝 Plantillas del {owner}: {archived} archivadas, {len(new_templates)} nuevas")
    return new_templates


# =============================================================================
# ===================== MATERIALIZAR UN DÍA ===================================
# =============================================================================

def ensure_day(store: ChallengeStore, challenge: Challenge, day_number: int) -> list[TaskInstance]:
    """
    Devuelve las tareas del día `day_number`, creándolas si aún no existen.

    - Si el día ya tiene tareas → se devuelven tal cual (sin re-sincronizar).
    - Si no → una tarea por plantilla vigente, sin completar.
    - Si dos peticiones llegan a la vez, la restricción única deja pasar
      solo a una; la otra vuelve a leer y obtiene las mismas filas.
    - Sin plantillas en ningún nivel → lista vacía (la UI muestra "sin tareas").
    """
    if not 1 <= day_number <= challenge.total_days:
        raise DayOutOfRangeError(
            f"Día {day_number} fuera del reto {challenge.id} (1..{challenge.total_days})"
        )

    existing = store.get_task_instances(challenge.id, day_number)
    if existing:
        return existing

    templates = resolve_templates(store, challenge)
    if not templates:
        logger.warning(f"⚠️ Reto {challenge.id}: no hay plantillas para el día {day_number}")
        return []

    # Comprobar justo antes de insertar: otra petición pudo adelantarse
    existing = store.get_task_instances(challenge.id, day_number)
    if existing:
        return existing

    created = store.insert_task_instances([
        TaskInstance(
            challenge_id=challenge.id,
            template_id=t.id,
            day_number=day_number,
            completed=False,
        )
        for t in templates
    ])
    if created:
        logger.info(f"📅 Reto {challenge.id}: día {day_number} creado con {len(templates)} tareas")

    return store.get_task_instances(challenge.id, day_number)


# =============================================================================
# ===================== MARCAR TAREAS =========================================
# =============================================================================

def toggle_task(store: ChallengeStore, task_id: int, completed: bool, now: datetime) -> TaskInstance:
    """
    Guarda el nuevo estado de una tarea.
    Si la escritura falla se lanza StoreError y NO se recalcula nada.
    """
    task = store.set_task_completion(task_id, completed, to_naive_utc(now) if completed else None)
    if task is None:
        raise LookupError(f"Tarea {task_id} no encontrada")
    return task


def describe_tasks(store: ChallengeStore, instances: list[TaskInstance]) -> list[dict]:
    """
    Tareas listas para mostrar (nombre, descripción, peso de su plantilla).
    Si la plantilla no aparece, se muestra "Tarea desconocida" con peso 0
    en lugar de romper el día entero.
    """
    templates = store.get_templates_by_ids(t.template_id for t in instances)

    result = []
    for task in instances:
        template = templates.get(task.template_id)
        if template is None:
            logger.warning(f"Tarea {task.id}: plantilla {task.template_id} no encontrada")
        result.append({
            "id": task.id,
            "template_id": task.template_id,
            "day_number": task.day_number,
            "name": template.name if template else UNKNOWN_TASK_NAME,
            "description": (template.description or "") if template else "",
            "weight": template.weight if template else 0,
            "completed": bool(task.completed),
            "completed_at": task.completed_at,
        })
    return result


def task_weight_map(store: ChallengeStore, instances: list[TaskInstance]) -> dict[int, int]:
    """{template_id: weight}; plantillas desaparecidas valen 0"""
    templates = store.get_templates_by_ids(t.template_id for t in instances)
    return {tid: t.weight for tid, t in templates.items()}


def completed_points(store: ChallengeStore, instances: list[TaskInstance]) -> int:
    """Suma de pesos de todas las tareas completadas"""
    weights = task_weight_map(store, instances)
    return sum(weights.get(t.template_id, 0) for t in instances if t.completed)
