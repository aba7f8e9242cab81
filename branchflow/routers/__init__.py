"""API routers."""

from branchflow.routers.appointments import router as appointments_router
from branchflow.routers.branch_policies import router as branch_policies_router
from branchflow.routers.queue import router as queue_router
from branchflow.routers.schedulers import router as schedulers_router
