"""
=============================================================================
CLOCK.PY — ¿En qué día del reto estamos?
=============================================================================
Convierte (fecha de inicio, "ahora") en el número de día del reto.

Regla:
  día = (fecha de hoy - fecha de inicio) en días naturales + 1
  recortado a [1, total_days]

El reloj real se lee SOLO en now_utc()/today(). Todo lo demás recibe
`now` como parámetro, así el cálculo es puro y los tests controlan el tiempo.
"""

import os
from datetime import date, datetime
from typing import Union

import pytz

# Zona horaria de referencia: todas las fechas se truncan a medianoche aquí
REFERENCE_TIMEZONE = os.getenv("CHALLENGE_TIMEZONE", "Europe/Madrid")

Moment = Union[date, datetime]


def reference_timezone():
    return pytz.timezone(REFERENCE_TIMEZONE)


def now_utc() -> datetime:
    """Momento actual (con zona UTC). Solo para los llamadores más externos."""
    return datetime.now(pytz.utc)


def to_reference_date(moment: Moment) -> date:
    """
    Trunca un momento a su fecha natural en la zona de referencia.

      - date            → se usa tal cual
      - datetime aware  → se convierte a la zona de referencia
      - datetime naive  → se interpreta como UTC (como datetime.utcnow())
    """
    if isinstance(moment, datetime):
        if moment.tzinfo is None:
            moment = pytz.utc.localize(moment)
        return moment.astimezone(reference_timezone()).date()
    return moment


def today() -> date:
    return to_reference_date(now_utc())


def current_day_index(start_date: date, total_days: int, now: Moment) -> int:
    """
    Día actual (1-based) de un reto que empezó en `start_date`.

    Nunca devuelve 0 ni un día más allá del final: pasado el último día
    se queda fijo en total_days (así se puede detectar la finalización).
    """
    if total_days < 1:
        raise ValueError(f"total_days debe ser positivo (recibido {total_days})")

    elapsed = (to_reference_date(now) - to_reference_date(start_date)).days
    return min(max(1, elapsed + 1), total_days)


def day_date(start_date: date, day_number: int) -> date:
    """Fecha natural que corresponde al día `day_number` del reto"""
    return date.fromordinal(start_date.toordinal() + day_number - 1)


def to_naive_utc(moment: datetime) -> datetime:
    """Las columnas DateTime guardan UTC sin zona (como datetime.utcnow())"""
    if moment.tzinfo is None:
        return moment
    return moment.astimezone(pytz.utc).replace(tzinfo=None)
