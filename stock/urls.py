from rest_framework.routers import DefaultRouter

from stock.views import MeatStockItemViewSet, MeatStockLogViewSet, StockItemViewSet

router = DefaultRouter()
router.register(r"stock-items", StockItemViewSet, basename="stock-item")
router.register(r"meat-items", MeatStockItemViewSet, basename="meat-item")
router.register(r"meat-logs", MeatStockLogViewSet, basename="meat-log")

urlpatterns = router.urls
