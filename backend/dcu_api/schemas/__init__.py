# DCU API Schemas
