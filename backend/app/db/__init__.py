############################################################
#
# genrouter - Generation Job Orchestrator and Backend Router
#
# __init__.py: Database package initialization and exports
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Database package for GenRouter."""

from backend.app.db.base import Base
from backend.app.db.session import create_engine, create_session_factory, init_db, session_scope

__all__ = ["Base", "create_engine", "create_session_factory", "init_db", "session_scope"]
