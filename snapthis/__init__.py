"""SnapThis: event photo pages sold through a small storefront."""
