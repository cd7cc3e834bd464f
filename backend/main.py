"""
Housemate Backend API

A FastAPI backend for shared household expenses.
This module sets up the app and mounts routers - all endpoint logic is in routers/.
"""

import os
import logging
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

import models
from database import engine

# Import routers
from routers import auth, homes, expenses, notifications, jobs


logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())

# Create database tables
models.Base.metadata.create_all(bind=engine)

# Initialize FastAPI app
app = FastAPI(
    title="Housemate API",
    description="API for shared household expenses, sessions and reminders",
    version="1.0.0"
)

# CORS middleware
ALLOWED_ORIGINS = [origin.strip() for origin in os.getenv("ALLOWED_ORIGINS", "*").split(",") if origin.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(auth.router)
app.include_router(homes.router)
app.include_router(expenses.router)
app.include_router(notifications.router)
app.include_router(jobs.router)


@app.get("/health")
def health():
    return {"status": "ok"}
