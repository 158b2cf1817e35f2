import logging

from django.conf import settings

from apps.core.numbering.exceptions import SettingsUnavailable
from apps.core.schools.models import NumberingSettings, School

logger = logging.getLogger(__name__)


def _school_id(school):
    return getattr(school, 'pk', school)


def ensure_numbering_settings(*, school):
    """Return the school's numbering settings, creating the defaults if missing."""
    school_id = _school_id(school)
    school_obj = school if isinstance(school, School) else School.objects.filter(pk=school_id).first()
    if school_obj is None or school_obj.pk is None:
        raise SettingsUnavailable(school_id)

    numbering, created = NumberingSettings.objects.get_or_create(school=school_obj)
    if created:
        logger.info(f"Created default numbering settings for school {school_obj.code}")
    return numbering


def get_numbering_settings(*, school, create_defaults=None):
    numbering = NumberingSettings.objects.filter(school_id=_school_id(school)).first()
    if numbering:
        return numbering

    if create_defaults is None:
        create_defaults = settings.RECEIPT_SETTINGS_AUTO_CREATE
    if not create_defaults:
        raise SettingsUnavailable(_school_id(school))

    return ensure_numbering_settings(school=school)
