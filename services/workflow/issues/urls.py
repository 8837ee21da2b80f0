"""Route registration for issue endpoints."""
from __future__ import annotations

from django.urls import include, path
from rest_framework.routers import SimpleRouter

from .views import IssueViewSet

router = SimpleRouter()
router.register("issues", IssueViewSet, basename="issue")

urlpatterns = [
    path("", include(router.urls)),
]
