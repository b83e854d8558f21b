"""
API Routes
"""
from fastapi import APIRouter

from lms.api.routes.payments import router as payments_router
from lms.api.routes.admin_payments import router as admin_payments_router
from lms.api.routes.courses import admin_router as admin_courses_router
from lms.api.routes.courses import router as courses_router
from lms.api.routes.student_enrollments import router as student_router
from lms.api.webhooks.payments import router as payment_webhook_router

router = APIRouter()

router.include_router(payments_router, prefix="/payments", tags=["payments"])
router.include_router(payment_webhook_router, prefix="/payments", tags=["webhooks"])
router.include_router(courses_router, prefix="/courses", tags=["courses"])
router.include_router(student_router, prefix="/student", tags=["student"])
router.include_router(admin_payments_router, prefix="/admin", tags=["admin"])
router.include_router(admin_courses_router, prefix="/admin", tags=["admin"])
