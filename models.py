"""
=============================================================================
MODELS.PY — Modelos (Tablas) de la Base de Datos
=============================================================================
Cada clase aquí = una tabla. Cada atributo = una columna.

RELACIONES:
  USER
  ├── challenges[] (user_challenges) ──→ daily_tasks[] ──→ template
  ├── templates[] (plantillas propias)
  └── user_achievements[] ──→ achievement

  GROUP
  ├── templates[] (plantillas del grupo)
  └── challenges[] (retos de miembros vinculados al grupo)

Reglas que la BD garantiza por sí misma (el motor confía en ellas para
ser idempotente sin usar locks):
  - Una tarea diaria por (reto, día, plantilla)      → uq_daily_task
  - Un logro desbloqueado por (usuario, logro)        → uq_user_achievement
  - day_number siempre >= 1                           → ck_daily_task_day
  - Un reto activo por usuario (individual) y por grupo → uq_active_*_challenge
"""

from datetime import datetime, date
from sqlalchemy import (
    Column, Integer, String, Boolean, Text, Date, DateTime,
    ForeignKey, UniqueConstraint, CheckConstraint, Index, text
)
from sqlalchemy.orm import relationship
from database import Base
import enum


# =============================================================================
# ===================== ENUMS (Tipos predefinidos) ============================
# =============================================================================

class TemplateScope(str, enum.Enum):
    """A quién pertenece un conjunto de plantillas de tareas"""
    global_default = "global_default"  # Las tareas estándar del reto
    user = "user"                      # Tareas personalizadas del usuario
    group = "group"                    # Tareas definidas por el grupo

class RequirementType(str, enum.Enum):
    """Qué estadística mide un logro"""
    streak = "streak"          # Racha más larga
    points = "points"          # Puntos totales
    tasks = "tasks"            # Tareas completadas
    challenges = "challenges"  # Retos terminados

class GroupStatus(str, enum.Enum):
    draft = "draft"
    published = "published"


# =============================================================================
# ===================== TABLA 1: USERS ========================================
# =============================================================================
# Fila mínima de referencia. El alta y la edición de perfiles viven fuera
# de este servicio.

class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(100), nullable=False)
    email = Column(String(255), unique=True, nullable=True, index=True)
    timezone = Column(String(50), default="Europe/Madrid")
    created_at = Column(DateTime, default=datetime.utcnow)

    challenges = relationship("Challenge", back_populates="user", cascade="all, delete-orphan")
    user_achievements = relationship("UserAchievement", back_populates="user", cascade="all, delete-orphan")


# =============================================================================
# ===================== TABLA 2: GROUPS =======================================
# =============================================================================
# Solo lo que el motor necesita: la duración del reto de grupo y su dueño.
# La membresía la gestiona otro servicio.

class Group(Base):
    __tablename__ = "groups"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)
    total_days = Column(Integer, nullable=False, default=75)
    status = Column(String(20), default=GroupStatus.published.value)
    created_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)


# =============================================================================
# ===================== TABLA 3: CHALLENGE_TEMPLATES ==========================
# =============================================================================
# Plantillas de tareas. INMUTABLES una vez usadas: para cambiar las tareas
# se archiva el conjunto anterior y se crea uno nuevo (así los días ya
# creados siguen resolviendo su nombre y su peso).

class TaskTemplate(Base):
    __tablename__ = "challenge_templates"

    id = Column(Integer, primary_key=True, autoincrement=True)

    name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)
    weight = Column(Integer, nullable=False, default=10)
    # weight → puntos que da completar la tarea

    is_default = Column(Boolean, default=False)
    # is_default → parte del conjunto global (sin dueño)
    created_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    group_id = Column(Integer, ForeignKey("groups.id"), nullable=True)

    archived = Column(Boolean, default=False)
    # archived → sustituida por un conjunto nuevo; no se usa para días nuevos
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        CheckConstraint("weight > 0", name="ck_template_weight"),
    )

    @property
    def scope(self) -> TemplateScope:
        if self.group_id is not None:
            return TemplateScope.group
        if self.created_by is not None and not self.is_default:
            return TemplateScope.user
        return TemplateScope.global_default


# =============================================================================
# ===================== TABLA 4: USER_CHALLENGES ==============================
# =============================================================================
# Una ejecución del reto de N días de un usuario (opcionalmente de grupo).
#
# Estados:
#   ACTIVO (día 1..N) → COMPLETION_SHOWN (completion_shown=True, terminal)
#   is_active: True → False al reiniciar/abandonar (terminal para ESTE registro)

class Challenge(Base):
    __tablename__ = "user_challenges"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    group_id = Column(Integer, ForeignKey("groups.id"), nullable=True)

    start_date = Column(Date, nullable=False, default=date.today)
    total_days = Column(Integer, nullable=False, default=75)

    is_active = Column(Boolean, nullable=False, default=True)
    completion_shown = Column(Boolean, nullable=False, default=False)
    # completion_shown → cerrojo de un solo sentido: la celebración final
    # se muestra UNA vez y nunca vuelve a False

    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        CheckConstraint("total_days > 0", name="ck_challenge_total_days"),
        Index("ix_challenge_user_active", "user_id", "is_active"),
        # Un reto activo individual por usuario y uno activo por grupo y usuario
        Index(
            "uq_active_individual_challenge", "user_id", unique=True,
            sqlite_where=text("is_active = 1 AND group_id IS NULL"),
            postgresql_where=text("is_active AND group_id IS NULL"),
        ),
        Index(
            "uq_active_group_challenge", "user_id", "group_id", unique=True,
            sqlite_where=text("is_active = 1 AND group_id IS NOT NULL"),
            postgresql_where=text("is_active AND group_id IS NOT NULL"),
        ),
    )

    user = relationship("User", back_populates="challenges")
    group = relationship("Group")
    tasks = relationship("TaskInstance", back_populates="challenge", cascade="all, delete-orphan")


# =============================================================================
# ===================== TABLA 5: DAILY_TASKS ==================================
# =============================================================================
# Una tarea concreta de un día concreto. Se crean de golpe la primera vez
# que se abre ese día y a partir de ahí el conjunto del día queda congelado.

class TaskInstance(Base):
    __tablename__ = "daily_tasks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    challenge_id = Column(Integer, ForeignKey("user_challenges.id"), nullable=False)
    template_id = Column(Integer, ForeignKey("challenge_templates.id"), nullable=False)

    day_number = Column(Integer, nullable=False)
    # day_number → 1..total_days del reto
    completed = Column(Boolean, nullable=False, default=False)
    completed_at = Column(DateTime, nullable=True)
    # completed_at → solo tiene valor si completed=True

    __table_args__ = (
        UniqueConstraint('challenge_id', 'day_number', 'template_id', name='uq_daily_task'),
        CheckConstraint("day_number >= 1", name="ck_daily_task_day"),
        Index("ix_daily_task_challenge_day", "challenge_id", "day_number"),
    )

    challenge = relationship("Challenge", back_populates="tasks")
    template = relationship("TaskTemplate")


# =============================================================================
# ===================== TABLA 6: ACHIEVEMENTS =================================
# =============================================================================
# Catálogo estático de logros (lo define el sistema, no el usuario)

class Achievement(Base):
    __tablename__ = "achievements"

    id = Column(Integer, primary_key=True, autoincrement=True)

    code = Column(String(50), unique=True, nullable=False)
    # code → identificador estable: "streak_7", "points_1000"...
    name = Column(String(100), nullable=False)
    description = Column(String(300), nullable=False)
    icon = Column(String(10), default="🏆")
    category = Column(String(30), nullable=False, default="general")

    requirement_type = Column(String(20), nullable=False)
    requirement_value = Column(Integer, nullable=False)
    points = Column(Integer, default=0)
    # points → recompensa que suma en el ranking de logros


# =============================================================================
# ===================== TABLA 7: USER_ACHIEVEMENTS ============================
# =============================================================================

class UserAchievement(Base):
    __tablename__ = "user_achievements"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    achievement_id = Column(Integer, ForeignKey("achievements.id"), nullable=False)

    unlocked_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint('user_id', 'achievement_id', name='uq_user_achievement'),
    )

    user = relationship("User", back_populates="user_achievements")
    achievement = relationship("Achievement")
