from portfolio_analytics.models.analytics import Event, PageView, VisitorSession

__all__ = ["Event", "PageView", "VisitorSession"]
