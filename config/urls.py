from django.contrib import admin
from django.urls import include, path

urlpatterns = [
    path("admin/", admin.site.urls),
    path("accounts/", include("django.contrib.auth.urls")),
    path("api/", include("marketplace.urls")),
    path("api/billing/", include("billing.urls")),
]


# admin customisation
admin.site.site_header = "Freight Marketplace"
admin.site.site_title = "Freight Marketplace"
admin.site.index_title = "Transaction Engine"
