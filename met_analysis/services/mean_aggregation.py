def aggregate_means(df, traits, by):
    """Arithmetic means of each trait per group, ignoring missing values."""
    if isinstance(traits, str):
        traits = [traits]
    if isinstance(by, str):
        by = [by]
    means = df.groupby(by, sort=True)[list(traits)].mean()
    return means.reset_index()
