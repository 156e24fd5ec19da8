"""Read-only access to the plot/owner registry."""

from typing import NamedTuple

from sqlalchemy.orm import Session, joinedload

from sntbilling.models.plot import Plot
from sntbilling.services.errors import PlotNotFound


class PlotInfo(NamedTuple):
    """Registry view of a plot as consumed by billing."""

    plot_id: int
    street: str
    number: str
    label: str
    owner_name: str | None
    owner_id: int | None
    owner_phone: str | None
    owner_email: str | None


def _to_info(plot: Plot) -> PlotInfo:
    return PlotInfo(
        plot_id=plot.id,
        street=plot.street,
        number=plot.number,
        label=plot.label,
        owner_name=plot.owner_name,
        owner_id=plot.person_id,
        owner_phone=plot.owner_phone,
        owner_email=plot.owner_email,
    )


class PlotRegistry:
    """Lookup of plots and their owners. Billing never writes here."""

    def __init__(self, db: Session):
        self.db = db

    def get_plot(self, plot_id: int) -> PlotInfo:
        """Get registry data for a plot.

        Raises:
            PlotNotFound: If the plot id does not exist
        """
        plot = self.db.get(Plot, plot_id)
        if plot is None:
            raise PlotNotFound(f"Plot {plot_id} not found")
        return _to_info(plot)

    def list_plots(self) -> list[Plot]:
        """All plots with their persons loaded, ordered by street and number."""
        return (
            self.db.query(Plot)
            .options(joinedload(Plot.person))
            .order_by(Plot.street, Plot.number, Plot.id)
            .all()
        )

    def labels(self, plot_ids: set[int] | None = None) -> dict[int, str]:
        """Map plot id to display label."""
        query = self.db.query(Plot)
        if plot_ids is not None:
            if not plot_ids:
                return {}
            query = query.filter(Plot.id.in_(plot_ids))
        return {plot.id: plot.label for plot in query.all()}


__all__ = ["PlotInfo", "PlotRegistry"]
