"""
frenchmentor.urls module.

Only the admin is routed; the tutoring UI talks to the session core directly.
"""

from django.contrib import admin
from django.urls import path

urlpatterns = [
    path('admin/', admin.site.urls),
]
