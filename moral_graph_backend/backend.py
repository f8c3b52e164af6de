from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from moral_graph_backend.config import configure_logging
from moral_graph_backend.graph_api import router as graph_router

configure_logging()

moral_graph_app = FastAPI(title="Moral Graph Backend")

moral_graph_app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

moral_graph_app.include_router(graph_router)
