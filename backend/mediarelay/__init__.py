"""MediaRelay: archive LINE chat media to Google Drive and OneDrive."""
