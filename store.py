"""
=============================================================================
STORE.PY — Acceso a datos del motor de retos
=============================================================================
Único punto por el que el motor lee y escribe en la BD.

Las tres escrituras "idempotentes" no usan locks, se apoyan en la BD:
  - insert_task_instances        → restricción única uq_daily_task
  - insert_unlocked_achievement  → restricción única uq_user_achievement
  - set_challenge_completion_shown → UPDATE condicional (compare-and-set)

Un choque con esas restricciones NO es un error para el usuario:
se deshace la transacción y se informa con un False.
Cualquier otro fallo de escritura se convierte en StoreError (reintentable).
"""

import logging
from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from models import (
    Achievement, Challenge, Group, TaskInstance, TaskTemplate,
    TemplateScope, UserAchievement
)

logger = logging.getLogger("hardtrack.store")


class StoreError(Exception):
    """Fallo transitorio leyendo/escribiendo en la BD. El cliente puede reintentar."""


class ChallengeStore:

    def __init__(self, db: Session):
        self.db = db

    # ─────────────────────────────────────────────────────────────────────────
    # PLANTILLAS
    # ─────────────────────────────────────────────────────────────────────────

    def get_task_templates(self, scope: TemplateScope, owner_id: Optional[int] = None) -> list[TaskTemplate]:
        """Plantillas vigentes (no archivadas) de un ámbito"""
        query = self.db.query(TaskTemplate).filter(TaskTemplate.archived == False)

        if scope == TemplateScope.group:
            query = query.filter(TaskTemplate.group_id == owner_id)
        elif scope == TemplateScope.user:
            query = query.filter(
                TaskTemplate.created_by == owner_id,
                TaskTemplate.group_id == None,
                TaskTemplate.is_default == False
            )
        else:
            query = query.filter(
                TaskTemplate.is_default == True,
                TaskTemplate.group_id == None
            )

        return query.order_by(TaskTemplate.id).all()

    def get_templates_by_ids(self, template_ids: Iterable[int]) -> dict[int, TaskTemplate]:
        """Plantillas por id, archivadas incluidas (los días antiguos las siguen usando)"""
        ids = set(template_ids)
        if not ids:
            return {}
        rows = self.db.query(TaskTemplate).filter(TaskTemplate.id.in_(ids)).all()
        return {t.id: t for t in rows}

    # ─────────────────────────────────────────────────────────────────────────
    # TAREAS DIARIAS
    # ─────────────────────────────────────────────────────────────────────────

    def get_task_instances(self, challenge_id: int, day_number: Optional[int] = None) -> list[TaskInstance]:
        query = self.db.query(TaskInstance).filter(TaskInstance.challenge_id == challenge_id)
        if day_number is not None:
            query = query.filter(TaskInstance.day_number == day_number)
        return query.order_by(TaskInstance.day_number, TaskInstance.id).all()

    def get_task_instance(self, task_id: int) -> Optional[TaskInstance]:
        return self.db.query(TaskInstance).filter(TaskInstance.id == task_id).first()

    def insert_task_instances(self, instances: list[TaskInstance]) -> bool:
        """
        Inserta las tareas de un día en UNA transacción.

        Si otra petición ya las creó (choque con uq_daily_task), se deshace
        todo y devuelve False: el llamador solo tiene que volver a leer.
        """
        if not instances:
            return True
        try:
            self.db.add_all(instances)
            self.db.commit()
            return True
        except IntegrityError:
            self.db.rollback()
            logger.info(
                f"Tareas del reto {instances[0].challenge_id} día {instances[0].day_number} "
                f"ya creadas por otra petición"
            )
            return False
        except SQLAlchemyError as e:
            self.db.rollback()
            raise StoreError("No se pudieron crear las tareas del día") from e

    def set_task_completion(self, task_id: int, completed: bool, completed_at: Optional[datetime]) -> Optional[TaskInstance]:
        """Marca/desmarca una tarea. completed_at solo se guarda si completed=True."""
        task = self.get_task_instance(task_id)
        if task is None:
            return None

        task.completed = completed
        task.completed_at = completed_at if completed else None
        try:
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise StoreError(f"No se pudo guardar la tarea {task_id}") from e

        self.db.refresh(task)
        return task

    # ─────────────────────────────────────────────────────────────────────────
    # RETOS
    # ─────────────────────────────────────────────────────────────────────────

    def get_challenge(self, challenge_id: int) -> Optional[Challenge]:
        return self.db.query(Challenge).filter(Challenge.id == challenge_id).first()

    def get_user_challenges(self, user_id: int, active_only: bool = False) -> list[Challenge]:
        query = self.db.query(Challenge).filter(Challenge.user_id == user_id)
        if active_only:
            query = query.filter(Challenge.is_active == True)
        return query.order_by(Challenge.created_at.desc(), Challenge.id.desc()).all()

    def get_group(self, group_id: int) -> Optional[Group]:
        return self.db.query(Group).filter(Group.id == group_id).first()

    def set_challenge_completion_shown(self, challenge_id: int) -> bool:
        """
        Cerrojo de un solo sentido: pasa completion_shown de False a True.

        Devuelve True SOLO a quien hizo el cambio. Una segunda llamada
        (otra pestaña, un re-render) encuentra 0 filas y recibe False.
        """
        try:
            changed = (
                self.db.query(Challenge)
                .filter(Challenge.id == challenge_id, Challenge.completion_shown == False)
                .update({Challenge.completion_shown: True}, synchronize_session=False)
            )
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise StoreError(f"No se pudo cerrar el reto {challenge_id}") from e

        # El commit expira los objetos cargados: el próximo acceso ve el valor nuevo
        return changed == 1

    # ─────────────────────────────────────────────────────────────────────────
    # LOGROS
    # ─────────────────────────────────────────────────────────────────────────

    def get_achievement_catalog(self) -> list[Achievement]:
        return (
            self.db.query(Achievement)
            .order_by(Achievement.requirement_value, Achievement.id)
            .all()
        )

    def get_unlocked_achievement_ids(self, user_id: int) -> set[int]:
        rows = (
            self.db.query(UserAchievement.achievement_id)
            .filter(UserAchievement.user_id == user_id)
            .all()
        )
        return {row[0] for row in rows}

    def get_unlock_times(self, user_id: int) -> dict[int, datetime]:
        """{achievement_id: unlocked_at} de los logros del usuario"""
        rows = (
            self.db.query(UserAchievement.achievement_id, UserAchievement.unlocked_at)
            .filter(UserAchievement.user_id == user_id)
            .all()
        )
        return {row.achievement_id: row.unlocked_at for row in rows}

    def insert_unlocked_achievement(self, user_id: int, achievement_id: int,
                                    unlocked_at: Optional[datetime] = None) -> bool:
        """
        Registra un logro desbloqueado.
        Si ya existía (uq_user_achievement) no pasa nada: devuelve False.
        """
        self.db.add(UserAchievement(
            user_id=user_id,
            achievement_id=achievement_id,
            unlocked_at=unlocked_at or datetime.utcnow()
        ))
        try:
            self.db.commit()
            return True
        except IntegrityError:
            self.db.rollback()
            logger.debug(f"Logro {achievement_id} ya desbloqueado por el usuario {user_id}")
            return False
        except SQLAlchemyError as e:
            self.db.rollback()
            raise StoreError("No se pudo guardar el logro") from e
