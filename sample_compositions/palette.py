BACKGROUND = (18, 22, 36)
ACCENT = (240, 180, 40)
