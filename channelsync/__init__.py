# channelsync package
