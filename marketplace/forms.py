# forms.py
from django import forms
from django.forms import modelform_factory

from .models import Load


class LoadForm(forms.ModelForm):
    """
    Validates load fields before they reach the database.

    JSON bodies and service callers both go through here, so dates, numbers
    and choices are parsed by Django's form fields instead of by hand.
    """

    class Meta:
        model = Load
        fields = [
            # route
            "origin_facility_name",
            "origin_address",
            "origin_city",
            "origin_state",
            "origin_zip",
            "destination_facility_name",
            "destination_address",
            "destination_city",
            "destination_state",
            "destination_zip",
            "pickup_date",
            "delivery_date",
            # freight
            "equipment_type",
            "commodity",
            "weight",
            "special_requirements",
            "is_public",
            "requires_eld",
            # financials
            "posted_rate",
        ]

    def clean_posted_rate(self):
        rate = self.cleaned_data.get("posted_rate")
        if rate is not None and rate <= 0:
            raise forms.ValidationError("Posted rate must be greater than zero.")
        return rate


def load_form_for(fields, instance=None):
    """Bound LoadForm covering only ``fields``, so partial updates keep the rest."""
    form_class = modelform_factory(Load, form=LoadForm, fields=sorted(fields))
    return form_class(data=fields, instance=instance)
