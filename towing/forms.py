from django import forms

from .models import Checklist


class CoordinatesForm(forms.Form):
    origin_lat = forms.FloatField(min_value=-90, max_value=90)
    origin_lng = forms.FloatField(min_value=-180, max_value=180)
    destination_lat = forms.FloatField(min_value=-90, max_value=90)
    destination_lng = forms.FloatField(min_value=-180, max_value=180)


class QuoteForm(CoordinatesForm):
    pass


class CreateRequestForm(CoordinatesForm):
    pickup_address = forms.CharField(max_length=255, required=False)
    destination_address = forms.CharField(max_length=255, required=False)
    guest_name = forms.CharField(max_length=100, required=False)
    agency_id = forms.IntegerField(required=False, min_value=1)


class AssignForm(forms.Form):
    provider_id = forms.IntegerField(min_value=1)


class ChecklistForm(forms.Form):
    items = forms.JSONField()
    front_photo_url = forms.URLField(max_length=500, required=False)
    rear_photo_url = forms.URLField(max_length=500, required=False)
    photos = forms.JSONField(required=False)
    notes = forms.CharField(required=False)
    toll_amount = forms.DecimalField(required=False, min_value=0, max_digits=10, decimal_places=2)
    skates_quantity = forms.IntegerField(required=False, min_value=0)

    def __init__(self, *args, phase=None, **kwargs):
        super().__init__(*args, **kwargs)
        self.phase = phase

    def clean_items(self):
        items = self.cleaned_data["items"]
        if not isinstance(items, list) or not all(isinstance(item, dict) and item.get("name") for item in items):
            raise forms.ValidationError("Items must be a list of objects with a name.")
        return items

    def clean_photos(self):
        photos = self.cleaned_data.get("photos") or []
        if not isinstance(photos, list) or not all(isinstance(url, str) for url in photos):
            raise forms.ValidationError("Photos must be a list of URLs.")
        return photos

    def clean(self):
        cleaned = super().clean()
        if self.phase != Checklist.Phase.END:
            # Costs are only declared at drop-off.
            cleaned["toll_amount"] = None
            cleaned["skates_quantity"] = 0
        return cleaned


class PositionForm(forms.Form):
    lat = forms.FloatField(min_value=-90, max_value=90)
    lng = forms.FloatField(min_value=-180, max_value=180)
    timestamp = forms.FloatField(required=False, min_value=0)


class OnlineStatusForm(forms.Form):
    online = forms.BooleanField(required=False)


class ProblemReportForm(forms.Form):
    problem_type = forms.CharField(max_length=50)
    description = forms.CharField(required=False)
    score = forms.IntegerField(required=False, min_value=1, max_value=5)


class RatingForm(forms.Form):
    score = forms.IntegerField(min_value=1, max_value=5)
    comment = forms.CharField(required=False, max_length=1000)


class PricingForm(forms.Form):
    """Every field is optional; only the submitted ones are changed."""

    base_price = forms.DecimalField(required=False, min_value=0, max_digits=10, decimal_places=2)
    price_per_km = forms.DecimalField(required=False, min_value=0, max_digits=10, decimal_places=2)
    price_per_minute = forms.DecimalField(required=False, min_value=0, max_digits=10, decimal_places=2)
    return_base_fee = forms.DecimalField(required=False, min_value=0, max_digits=10, decimal_places=2)
    offers_skates = forms.BooleanField(required=False)
    skates_price = forms.DecimalField(required=False, min_value=0, max_digits=10, decimal_places=2)

    def changed_fields(self):
        return {
            name: self.cleaned_data[name]
            for name in self.fields
            if name in self.data and self.cleaned_data[name] is not None
        }
