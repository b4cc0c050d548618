from django.urls import path, include
from hotel_management.views import health_check, welcome

urlpatterns = [
    path('health', health_check, name='health'),
    path('', welcome, name='welcome'),
    path('api/', include('hotel_management.urls')),
]

handler404 = 'hotel_management.views.not_found'
handler500 = 'hotel_management.views.server_error'
