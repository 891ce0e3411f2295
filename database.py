"""
=============================================================================
DATABASE.PY — Conexión a la Base de Datos
=============================================================================
En DESARROLLO: SQLite (un archivo .db en la carpeta del proyecto).
En PRODUCCIÓN: PostgreSQL, si existe la variable de entorno DATABASE_URL.

El motor de retos no sabe nada de esto: solo habla con la BD a través
de store.ChallengeStore, que recibe una Session de aquí.
"""

import os
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base

# ─────────────────────────────────────────────────────────────────────────────
# CONEXIÓN
# ─────────────────────────────────────────────────────────────────────────────

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./hardtrack.db")

# Los proveedores dan la URL con "postgres://" pero usamos psycopg (v3),
# así que SQLAlchemy necesita "postgresql+psycopg://"
if DATABASE_URL.startswith("postgres://"):
    DATABASE_URL = DATABASE_URL.replace("postgres://", "postgresql+psycopg://", 1)
elif DATABASE_URL.startswith("postgresql://"):
    DATABASE_URL = DATABASE_URL.replace("postgresql://", "postgresql+psycopg://", 1)

# ─────────────────────────────────────────────────────────────────────────────
# ENGINE + SESSION
# ─────────────────────────────────────────────────────────────────────────────
# check_same_thread=False → solo para SQLite: FastAPI ejecuta los endpoints
# síncronos en un threadpool.

engine_args = {}
if DATABASE_URL.startswith("sqlite"):
    engine_args["connect_args"] = {"check_same_thread": False}

engine = create_engine(DATABASE_URL, echo=False, **engine_args)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# ─────────────────────────────────────────────────────────────────────────────
# BASE (Clase base para los modelos)
# ─────────────────────────────────────────────────────────────────────────────

Base = declarative_base()


def get_db():
    """
    Dependencia de FastAPI: abre una sesión por petición y la cierra al final.

      @app.get("/algo")
      def mi_endpoint(db: Session = Depends(get_db)):
          ...
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(bind=None):
    """
    Crea todas las tablas si no existen.
    Se llama una vez al arrancar la aplicación (y desde los tests con
    un engine en memoria).
    """
    # Importar los modelos registra sus tablas en Base.metadata
    import models  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)
