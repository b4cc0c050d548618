from django.urls import path
from rest_framework.routers import DefaultRouter
from hotel_management.views import AuthViewSet, RoomViewSet, BookingViewSet

router = DefaultRouter()
router.register(r'auth', AuthViewSet, basename='auth')
router.register(r'rooms', RoomViewSet)
router.register(r'bookings', BookingViewSet)

# rooms also accept POST on the detail url as a delete
room_detail = RoomViewSet.as_view({
    'get': 'retrieve',
    'put': 'update',
    'patch': 'partial_update',
    'delete': 'destroy',
    'post': 'destroy',
})

urlpatterns = [
    path('rooms/<str:pk>/', room_detail, name='room-detail'),
] + router.urls
