############################################################
#
# genrouter - Generation Job Orchestrator and Backend Router
#
# __init__.py: Job lifecycle package
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Job lifecycle: state machine, store, queue monitor and status views."""
