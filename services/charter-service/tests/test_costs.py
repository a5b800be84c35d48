from app.costs import FuelConfig, PackageConfig, booking_costs, duration_hours, fuel_cost, package_addon_cost


def test_fuel_cost():
    assert fuel_cost(20, 4, 1.5) == 120.00


def test_fuel_cost_rounds_half_up():
    # 1.5 * 1 * 0.335 = 0.5025
    assert fuel_cost(1.5, 1, 0.335) == 0.50
    assert fuel_cost(1, 1, 0.125) == 0.13


def test_package_addon_cost_by_package():
    assert package_addon_cost("charter_full", 5, drinks=5, food=3) == 40.00
    assert package_addon_cost("charter_drinks", 5, drinks=5, food=3) == 25.00
    assert package_addon_cost("charter_food", 5, drinks=5, food=3) == 15.00
    assert package_addon_cost("charter_only", 5, drinks=5, food=3) == 0.0
    assert package_addon_cost("sunset_special", 5, drinks=5, food=3) == 0.0
    assert package_addon_cost(None, 5, drinks=5, food=3) == 0.0


def test_duration_hours():
    assert duration_hours("4h") == 4
    assert duration_hours("12h") == 12
    assert duration_hours("half-day") == 0
    assert duration_hours("") == 0
    assert duration_hours(None) == 0


def test_booking_costs_without_configuration_cost_nothing():
    costs = booking_costs(None, None, "4h", "charter_full", 5)
    assert costs.fuel_cost == 0.0
    assert costs.package_addon_cost == 0.0


def test_booking_costs_with_configuration():
    costs = booking_costs(FuelConfig(20, 1.5), PackageConfig(5, 3), "4h", "charter_full", 5)
    assert costs.fuel_cost == 120.00
    assert costs.package_addon_cost == 40.00


def test_unparseable_duration_has_no_fuel_cost():
    costs = booking_costs(FuelConfig(20, 1.5), None, "all day", "charter_only", 2)
    assert costs.fuel_cost == 0.0
