import os
from fastapi import APIRouter

router = APIRouter()


@router.get("/")
async def root():
    return {
        "status": "ConsultPilot Server is Running",
        "features": ["diagnostic_data_collection", "completion_analysis", "automatic_reports", "referrals"],
        "endpoints": {
            "start": "/api/consultations/{consultation_id}/start",
            "messages": "/api/consultations/{consultation_id}/messages",
            "confirm": "/api/consultations/{consultation_id}/confirm",
            "diagnostic_data": "/api/consultations/{consultation_id}/diagnostic-data",
            "outcomes": "/api/consultations/{consultation_id}/outcomes",
            "status": "/api/consultations/status",
        }
    }


@router.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "service": "consultpilot",
        "port": os.environ.get("PORT", 8080)
    }
