"""API routes"""

from typing import List

from fastapi import APIRouter, Depends, HTTPException, Request, Response

from ..config import Config
from ..users import UserCreate, UserExistsError, UserResponse, UserService

router = APIRouter()


def get_config(request: Request) -> Config:
    return request.app.state.config


def get_user_service(request: Request) -> UserService:
    return request.app.state.users


@router.get("/status")
async def service_status(config: Config = Depends(get_config)):
    """Build and runtime information"""
    return {
        "service": config.service.name,
        "status": "running",
        "environment": config.service.environment,
        "build": config.service.build,
        "commit": config.service.commit,
    }


@router.post("/users", status_code=201)
async def create_user(
    payload: UserCreate,
    users: UserService = Depends(get_user_service),
):
    """Register a user"""
    try:
        user = await users.create_user(payload)
    except UserExistsError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {"message": "User created successfully", "user": UserResponse(**user)}


@router.get("/users", response_model=List[UserResponse])
async def list_users(users: UserService = Depends(get_user_service)):
    """List registered users"""
    return users.list_users()


@router.get("/users/{user_id}", response_model=UserResponse)
async def get_user(user_id: str, users: UserService = Depends(get_user_service)):
    """Fetch one user, served from cache when possible"""
    user = await users.get_user(user_id)
    if user is None:
        raise HTTPException(status_code=404, detail=f"User {user_id} not found")
    return user


@router.delete("/users/{user_id}", status_code=204)
async def delete_user(user_id: str, users: UserService = Depends(get_user_service)):
    """Remove a user"""
    if not await users.delete_user(user_id):
        raise HTTPException(status_code=404, detail=f"User {user_id} not found")
    return Response(status_code=204)
