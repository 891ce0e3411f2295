"""
=============================================================================
SCHEMAS.PY — Esquemas de Validación (Pydantic)
=============================================================================
  - Models (SQLAlchemy) → definen las TABLAS de la BD
  - Schemas (Pydantic) → definen qué DATOS acepta/devuelve la API

Convención de nombres:
  XxxCreate → para crear algo nuevo (POST)
  XxxUpdate → para actualizar algo (PUT/PATCH)
  XxxResponse → lo que devuelve la API (GET)
"""

from pydantic import BaseModel, Field, model_validator
from datetime import date, datetime
from typing import Optional


# =============================================================================
# ===================== PLANTILLAS DE TAREAS ==================================
# =============================================================================

class TaskTemplateCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    description: Optional[str] = None
    weight: int = Field(default=10, ge=1, le=1000)

    @model_validator(mode="after")
    def name_not_blank(self):
        if not self.name.strip():
            raise ValueError("Todas las tareas necesitan un nombre")
        return self

class TemplateSetUpdate(BaseModel):
    """Nuevo conjunto de tareas (sustituye al anterior)"""
    tasks: list[TaskTemplateCreate] = Field(min_length=1)

class TaskTemplateResponse(BaseModel):
    id: int
    name: str
    description: Optional[str]
    weight: int
    group_id: Optional[int]
    created_at: datetime
    model_config = {"from_attributes": True}


# =============================================================================
# ===================== RETOS =================================================
# =============================================================================

class ChallengeCreate(BaseModel):
    """
    Empezar un reto.
      - group_id → reto de grupo (la duración la marca el grupo)
      - tasks → tareas personalizadas (solo retos individuales)
      - use_default_tasks → descartar las tareas propias y usar las estándar
    """
    total_days: int = Field(default=75, ge=1, le=365)
    group_id: Optional[int] = None
    tasks: Optional[list[TaskTemplateCreate]] = None
    use_default_tasks: bool = False

class ChallengeResponse(BaseModel):
    id: int
    user_id: int
    group_id: Optional[int]
    start_date: date
    total_days: int
    current_day: int
    is_active: bool
    completion_shown: bool

class StreakResponse(BaseModel):
    current: int
    longest: int

class CompletionSummary(BaseModel):
    """Resumen que se muestra UNA vez al terminar el reto"""
    total_days: int
    total_points: int
    longest_streak: int
    total_tasks_completed: int

class ChallengeHistoryEntry(BaseModel):
    id: int
    group_id: Optional[int]
    start_date: date
    total_days: int
    current_day: int
    is_active: bool
    is_completed: bool
    completion_shown: bool
    completed_tasks: int
    total_tasks: int
    completion_rate: float
    total_points: int
    longest_streak: int


# =============================================================================
# ===================== TAREAS DEL DÍA ========================================
# =============================================================================

class TaskResponse(BaseModel):
    id: int
    template_id: int
    day_number: int
    name: str
    description: str
    weight: int
    completed: bool
    completed_at: Optional[datetime]

class DayResponse(BaseModel):
    challenge_id: int
    day_number: int
    date: date
    current_day: int
    total_days: int
    tasks: list[TaskResponse]
    completed_count: int
    points: int
    progress: float
    day_complete: bool

class TaskToggle(BaseModel):
    completed: bool


# =============================================================================
# ===================== LOGROS ================================================
# =============================================================================

class AchievementResponse(BaseModel):
    id: int
    code: str
    name: str
    description: str
    icon: str
    category: str
    requirement_type: str
    requirement_value: int
    points: int
    model_config = {"from_attributes": True}

class AchievementProgressResponse(AchievementResponse):
    current: int
    progress: float
    unlocked: bool
    unlocked_at: Optional[datetime] = None

class UserStatsResponse(BaseModel):
    longest_streak: int
    total_points: int
    total_tasks: int
    completed_challenges: int
    current_streak: int

class ToggleResponse(BaseModel):
    task: TaskResponse
    day_complete: bool
    streaks: StreakResponse
    stats: UserStatsResponse
    new_achievements: list[AchievementResponse]
    completion: Optional[CompletionSummary] = None


# =============================================================================
# ===================== RANKINGS ==============================================
# =============================================================================

class AchievementLeaderboardEntry(BaseModel):
    rank: int
    user_id: int
    display_name: str
    achievement_count: int
    total_points: int

class GroupLeaderboardEntry(BaseModel):
    rank: int
    user_id: int
    display_name: str
    challenge_id: int
    current_day: int
    total_days: int
    points: int
    completed_tasks: int
    current_streak: int

class FriendStreakEntry(BaseModel):
    user_id: int
    display_name: str
    current_streak: int
    longest_streak: int
