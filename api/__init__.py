"""FundRaise HTTP API: FastAPI dependencies and routers."""
