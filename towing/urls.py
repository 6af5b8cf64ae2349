from django.urls import path
from .views import (
    AcceptRequestView, ActiveRequestView, AdvanceStatusView, AssignProviderView, CancelRequestView,
    ChecklistResumeView, ChecklistSubmitView, DeclineRequestView, MessagesReadView, OpenRequestListView,
    ProblemReportView, ProviderPositionView, ProviderPricingView, ProviderStatusView, QuoteView,
    RateRequestView, RequestCreateView, RequestDetailView, TrackingSnapshotView,
)

app_name = "towing"

urlpatterns = [
    path("api/quote/", QuoteView.as_view(), name="quote"),
    path("api/requests/", RequestCreateView.as_view(), name="request-create"),
    path("api/requests/active/", ActiveRequestView.as_view(), name="request-active"),
    path("api/requests/open/", OpenRequestListView.as_view(), name="request-open"),
    path("api/requests/<int:pk>/", RequestDetailView.as_view(), name="request-detail"),
    path("api/requests/<int:pk>/assign/", AssignProviderView.as_view(), name="request-assign"),
    path("api/requests/<int:pk>/accept/", AcceptRequestView.as_view(), name="request-accept"),
    path("api/requests/<int:pk>/decline/", DeclineRequestView.as_view(), name="request-decline"),
    path("api/requests/<int:pk>/advance/", AdvanceStatusView.as_view(), name="request-advance"),
    path("api/requests/<int:pk>/checklist/<str:phase>/", ChecklistSubmitView.as_view(), name="checklist-submit"),
    path(
        "api/requests/<int:pk>/checklist/<str:phase>/resume/",
        ChecklistResumeView.as_view(),
        name="checklist-resume",
    ),
    path("api/requests/<int:pk>/cancel/", CancelRequestView.as_view(), name="request-cancel"),
    path("api/requests/<int:pk>/problem/", ProblemReportView.as_view(), name="request-problem"),
    path("api/requests/<int:pk>/rating/", RateRequestView.as_view(), name="request-rating"),
    path("api/requests/<int:pk>/tracking/", TrackingSnapshotView.as_view(), name="request-tracking"),
    path("api/requests/<int:pk>/messages/read/", MessagesReadView.as_view(), name="messages-read"),
    path("api/providers/me/status/", ProviderStatusView.as_view(), name="provider-status"),
    path("api/providers/me/position/", ProviderPositionView.as_view(), name="provider-position"),
    path("api/providers/me/pricing/", ProviderPricingView.as_view(), name="provider-pricing"),
]
