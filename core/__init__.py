"""core/ -- Kernel layer: configuration shared by api/ and auth/."""
