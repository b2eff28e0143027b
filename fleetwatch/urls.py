from django.urls import path
from .views import FleetDensityAPIView, FleetSnapshotAPIView, RoutingStatusAPIView

app_name = "fleetwatch"

urlpatterns = [
    path("api/fleet/", FleetSnapshotAPIView.as_view(), name="fleet-snapshot"),
    path("api/fleet/density/", FleetDensityAPIView.as_view(), name="fleet-density"),
    path("api/routing/status/", RoutingStatusAPIView.as_view(), name="routing-status"),
]
