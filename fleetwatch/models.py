from django.db import models

from .trips import LocationDescriptor, TripRecord


class Trip(models.Model):
    STATUS_CHOICES = [
        ('QUOTED', 'Quoted'),
        ('CONFIRMED', 'Confirmed'),
        ('COMPLETED', 'Completed'),
        ('CANCELLED', 'Cancelled'),
    ]
    customer_name = models.CharField(max_length=100, blank=True, default='')
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default='QUOTED')
    trip_date = models.CharField(max_length=40)  # ISO-8601 as entered by dispatch
    duration_min = models.FloatField(null=True, blank=True)
    duration_in_traffic_min = models.FloatField(null=True, blank=True)
    distance_km = models.FloatField(null=True, blank=True)

    pickup_text = models.CharField(max_length=255, blank=True, default='')
    pickup_original_link = models.CharField(max_length=500, blank=True, default='')
    pickup_lat = models.FloatField(null=True, blank=True)
    pickup_lng = models.FloatField(null=True, blank=True)

    destination_text = models.CharField(max_length=255, blank=True, default='')
    destination_original_link = models.CharField(max_length=500, blank=True, default='')
    dest_lat = models.FloatField(null=True, blank=True)
    dest_lng = models.FloatField(null=True, blank=True)

    # [{"text": ..., "link": ..., "lat": ..., "lng": ...}, ...] in travel order
    stops = models.JSONField(default=list, blank=True)

    class Meta:
        ordering = ['trip_date', 'id']

    def __str__(self):
        return f"Trip {self.pk} ({self.status})"

    def to_record(self) -> TripRecord:
        return TripRecord(
            trip_id=self.pk,
            status=self.status,
            trip_date=self.trip_date,
            pickup=LocationDescriptor(
                text=self.pickup_text,
                link=self.pickup_original_link,
                lat=self.pickup_lat,
                lng=self.pickup_lng,
            ),
            destination=LocationDescriptor(
                text=self.destination_text,
                link=self.destination_original_link,
                lat=self.dest_lat,
                lng=self.dest_lng,
            ),
            stops=tuple(
                LocationDescriptor.from_dict(stop)
                for stop in (self.stops or [])
                if isinstance(stop, dict)
            ),
            duration_min=self.duration_min,
            duration_in_traffic_min=self.duration_in_traffic_min,
            distance_km=self.distance_km,
        )
