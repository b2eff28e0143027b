from __future__ import annotations

import logging

from django.apps import apps
from django.http import JsonResponse
from django.views.generic import View

from .models import Trip

LOGGER = logging.getLogger(__name__)


def get_fleet_session():
    return apps.get_app_config("fleetwatch").session


def _trip_records():
    return [trip.to_record() for trip in Trip.objects.all()]


class FleetSnapshotAPIView(View):
    def get(self, request, *args, **kwargs):
        snapshot = get_fleet_session().evaluate(_trip_records())
        LOGGER.debug(
            "Fleet snapshot: %d positioned, %d unpositioned",
            snapshot["counts"]["positioned"],
            snapshot["counts"]["unpositioned"],
        )
        return JsonResponse(snapshot)


class FleetDensityAPIView(View):
    def get(self, request, *args, **kwargs):
        snapshot = get_fleet_session().evaluate(_trip_records())
        return JsonResponse(
            {
                "evaluated_at": snapshot["evaluated_at"],
                "cells": snapshot["density"],
                "phases": snapshot["counts"]["phases"],
            }
        )


class RoutingStatusAPIView(View):
    def get(self, request, *args, **kwargs):
        return JsonResponse(get_fleet_session().geometry_cache.status())
