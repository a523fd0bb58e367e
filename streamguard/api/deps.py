from fastapi import BackgroundTasks, Depends
from sqlalchemy.orm import Session, sessionmaker

from streamguard.config import AppConfig
from streamguard.core.database import get_db
from streamguard.services.backfill_service import BackfillCoordinator, TaskRunner, build_task_runner


def get_task_runner(background_tasks: BackgroundTasks, db: Session = Depends(get_db)) -> TaskRunner:
    """Task runner for the request; local tasks run after the response is sent."""
    # Task sessions share the request's engine but not its transaction
    session_factory = sessionmaker(autocommit=False, autoflush=False, bind=db.get_bind())
    return build_task_runner(AppConfig(), session_factory=session_factory, dispatch=background_tasks.add_task)


def get_coordinator(runner: TaskRunner = Depends(get_task_runner)) -> BackfillCoordinator:
    return BackfillCoordinator(runner)
