"""Feature packages. Each owns its models, core services and blueprint; shared primitives live one level up."""
