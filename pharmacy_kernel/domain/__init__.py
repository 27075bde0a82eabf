"""Pure domain core: clock, policy, DTOs, register contexts, pricing, dispensing."""
