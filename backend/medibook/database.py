from sqlmodel import SQLModel, create_engine, Session
from .config import settings

# SQLite needs same-thread checks off for the threadpool FastAPI runs sync routes in
connect_args = {"check_same_thread": False} if settings.DATABASE_URL.startswith("sqlite") else {}
engine = create_engine(
    settings.DATABASE_URL,
    echo=settings.SQL_ECHO,
    connect_args=connect_args,
)


def init_db():
    SQLModel.metadata.create_all(engine)


def get_session():
    """Dependency to get a database session for each request."""
    with Session(engine) as session:
        yield session
