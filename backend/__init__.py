############################################################
#
# genrouter - Generation Job Orchestrator and Backend Router
#
# __init__.py: Root package initialization and version definition
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""GenRouter - job queue and router for generation backends."""

__version__ = "0.1.0"
