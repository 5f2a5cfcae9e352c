from fastapi import APIRouter

from chaingate.api.chat import router as chat_router
from chaingate.api.inference import router as inference_router
from chaingate.api.users import router as users_router

api_router = APIRouter(prefix="/api")
api_router.include_router(inference_router)
api_router.include_router(users_router)
api_router.include_router(chat_router)
