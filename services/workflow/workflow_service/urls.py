"""Root routes: workflow administration and issue transitions, both under /api/."""
from django.urls import include, path

urlpatterns = [
    path("api/", include("workflows.urls")),
    path("api/", include("issues.urls")),
]
